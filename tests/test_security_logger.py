"""
Security Logger Tests
=====================
Audit entries, persistence and the evaluator privacy report.
"""

import pytest

from fhe_risk.feature_encoder import FeatureEncoder
from fhe_risk.secure_linear import SecureLinearEvaluator
from fhe_risk.security_logger import DataType, OperationType, SecurityLogger


class TestAuditEntries:

    def test_engine_records_bookkeeping(self, key_manager):
        log = SecurityLogger()
        engine = key_manager.public_engine()
        engine.audit = log

        encrypted = FeatureEncoder(engine).encrypt_features([70, 20])
        SecureLinearEvaluator(engine).dot_product_plus_bias(encrypted, [0.01685, 0.2947], -10.2735)

        operations = [e.operation for e in log.get_all_entries()]
        for expected in ('encrypt', 'multiply', 'relinearize', 'rescale', 'rotate', 'add'):
            assert expected in operations

        rescale = next(e for e in log.get_all_entries() if e.operation == 'rescale')
        assert rescale.details['level'] == 1
        assert rescale.details['from_level'] == 2
        assert rescale.details['scale_bits'] == pytest.approx(40.0)
        assert log.verify_no_violations()

    def test_sequence_ids_increase(self):
        log = SecurityLogger()
        first = log.log_stage("r1", "keys_generated")
        second = log.log_stage("r1", "features_encrypted")
        assert second.sequence_id == first.sequence_id + 1

    def test_client_may_see_plaintext(self):
        log = SecurityLogger()
        entry = log.log_client_encrypt(feature_count=2, level=2)
        assert entry.is_safe
        assert 'plaintext' in entry.data_types

    def test_keygen_entry_has_no_key_material(self):
        log = SecurityLogger()
        entry = log.log_keygen(1, 8192, [60, 40, 40, 60])
        assert set(entry.details) == {'key_epoch', 'poly_modulus_degree', 'coeff_mod_bit_sizes'}


class TestAuditReport:

    def test_report_on_clean_log(self):
        log = SecurityLogger()
        log.log('evaluator', OperationType.MULTIPLY, [DataType.CIPHERTEXT])
        log.log('decryptor', OperationType.DECRYPT, [DataType.CIPHERTEXT, DataType.PLAINTEXT])

        report = log.generate_audit_report()
        assert report['total_log_entries'] == 2
        assert report['entities'] == ['decryptor', 'evaluator']
        assert report['security_violations'] == []
        assert report['conclusion'].startswith("PRIVACY PRESERVED")

    def test_operation_counts_and_epochs(self):
        log = SecurityLogger()
        log.log_keygen(1, 8192, [60, 40, 40, 60])
        log.log('evaluator', OperationType.ROTATE, [DataType.CIPHERTEXT])
        log.log('evaluator', OperationType.ROTATE, [DataType.CIPHERTEXT])
        log.log('evaluator', OperationType.ADD, [DataType.CIPHERTEXT])

        assert log.count_operations('evaluator') == {'rotate': 2, 'add': 1}
        assert log.count_operations()['keygen'] == 1

        report = log.generate_audit_report()
        assert report['key_epochs'] == [1]
        assert report['evaluator_privacy_audit']['operations'] == {'rotate': 2, 'add': 1}

    def test_report_on_violation(self):
        log = SecurityLogger()
        log.log('evaluator', OperationType.ADD, [DataType.PLAINTEXT])

        report = log.generate_audit_report()
        assert report['evaluator_privacy_audit']['plaintext_access']
        assert len(report['security_violations']) == 1
        assert report['conclusion'].startswith("PRIVACY VIOLATION")


class TestPersistence:

    def test_entries_survive_reload(self, tmp_path):
        path = tmp_path / "audit.jsonl"
        log = SecurityLogger(str(path))
        log.log_keygen(1, 8192, [60, 40, 40, 60])
        log.log_stage("r1", "keys_generated")

        reloaded = SecurityLogger(str(path))
        assert len(reloaded.get_all_entries()) == 2
        assert reloaded.log_stage("r1", "features_encrypted").sequence_id == 3

    def test_clear_removes_file(self, tmp_path):
        path = tmp_path / "audit.jsonl"
        log = SecurityLogger(str(path))
        log.log_stage("r1", "keys_generated")

        log.clear()
        assert log.get_all_entries() == []
        assert not path.exists()
