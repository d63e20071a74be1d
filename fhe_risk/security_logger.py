"""
Security Logger for the Encrypted Risk Pipeline
================================================
Audit trail proving the evaluating party only ever handles ciphertext.

Purpose:
- Log every homomorphic step with its level/scale bookkeeping
- Classify the data each party touched (ciphertext vs plaintext)
- Flag any step where the evaluator saw plaintext features
- Never record key material or feature values
"""

import json
import threading
from dataclasses import dataclass, asdict
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional


class DataType(Enum):
    """Classification of data handled in an operation"""
    CIPHERTEXT = "ciphertext"      # Encrypted data - safe
    PLAINTEXT = "plaintext"        # Raw features or decrypted score
    PUBLIC_PARAM = "public_param"  # Model constants, public keys - safe
    METADATA = "metadata"          # Non-sensitive metadata - safe


class OperationType(Enum):
    """Steps of the scoring pipeline"""
    KEYGEN = "keygen"
    ENCRYPT = "encrypt"
    DECRYPT = "decrypt"
    ADD = "add"
    ADD_PLAIN = "add_plain"
    SUBTRACT = "subtract"
    MULTIPLY = "multiply"
    MULTIPLY_PLAIN = "multiply_plain"
    RELINEARIZE = "relinearize"
    RESCALE = "rescale"
    MOD_SWITCH = "mod_switch"
    ROTATE = "rotate"
    STAGE = "stage"


# Parties allowed to see plaintext
TRUSTED_ENTITIES = ('client', 'decryptor')


@dataclass
class SecurityLogEntry:
    """Single security audit log entry"""
    timestamp: str
    entity: str            # 'client', 'evaluator', 'decryptor'
    operation: str
    data_types: List[str]
    is_safe: bool          # False if an untrusted party saw plaintext
    details: Dict[str, Any]
    sequence_id: int

    def to_dict(self) -> dict:
        return asdict(self)


class SecurityLogger:
    """
    Append-only audit log shared by all pipelines of a session.

    Thread-safe: concurrent inference requests may log into the same
    instance.
    """

    def __init__(self, log_file: Optional[str] = None):
        """
        Initialize security logger.

        Args:
            log_file: Optional JSON-lines file to persist entries
        """
        self._entries: List[SecurityLogEntry] = []
        self._lock = threading.Lock()
        self._sequence = 0
        self.log_file = Path(log_file) if log_file else None

        if self.log_file and self.log_file.exists():
            self._load_from_file()

    def log(self,
            entity: str,
            operation: OperationType,
            data_types: List[DataType],
            details: Dict[str, Any] = None) -> SecurityLogEntry:
        """
        Log a security-relevant operation.

        Args:
            entity: Who performed the operation
            operation: Type of operation performed
            data_types: Types of data involved in the operation
            details: Additional non-sensitive context

        Returns:
            The created log entry
        """
        with self._lock:
            self._sequence += 1

            is_safe = not (entity not in TRUSTED_ENTITIES and DataType.PLAINTEXT in data_types)

            entry = SecurityLogEntry(
                timestamp=datetime.now().isoformat(),
                entity=entity,
                operation=operation.value,
                data_types=[dt.value for dt in data_types],
                is_safe=is_safe,
                details=details or {},
                sequence_id=self._sequence
            )
            self._entries.append(entry)

            if self.log_file:
                self._append_to_file(entry)

            return entry

    def log_keygen(self, key_epoch: int, poly_modulus_degree: int, chain: List[int]) -> SecurityLogEntry:
        """Log key generation (metadata only, never key bytes)"""
        return self.log(
            entity='decryptor',
            operation=OperationType.KEYGEN,
            data_types=[DataType.METADATA],
            details={
                'key_epoch': key_epoch,
                'poly_modulus_degree': poly_modulus_degree,
                'coeff_mod_bit_sizes': list(chain)
            }
        )

    def log_client_encrypt(self, feature_count: int, level: int) -> SecurityLogEntry:
        """Log the client encrypting its own features"""
        return self.log(
            entity='client',
            operation=OperationType.ENCRYPT,
            data_types=[DataType.PLAINTEXT, DataType.CIPHERTEXT],
            details={'action': 'encrypt_features', 'feature_count': feature_count, 'level': level}
        )

    def log_stage(self, request_id: str, stage: str) -> SecurityLogEntry:
        """Log a pipeline state transition"""
        return self.log(
            entity='pipeline',
            operation=OperationType.STAGE,
            data_types=[DataType.METADATA],
            details={'request_id': request_id, 'stage': stage}
        )

    def get_all_entries(self) -> List[SecurityLogEntry]:
        """Snapshot of every entry, oldest first"""
        with self._lock:
            return list(self._entries)

    def get_entries_for_entity(self, entity: str) -> List[SecurityLogEntry]:
        """Entries written by one party ('client', 'evaluator', ...)"""
        return [e for e in self.get_all_entries() if e.entity == entity]

    def get_request_trace(self, request_id: str) -> List[str]:
        """Stages one inference request passed through, in order"""
        return [
            e.details['stage'] for e in self.get_entries_for_entity('pipeline')
            if e.details.get('request_id') == request_id
        ]

    def get_violations(self) -> List[SecurityLogEntry]:
        """Entries where an untrusted party handled plaintext"""
        return [e for e in self.get_all_entries() if not e.is_safe]

    def verify_no_violations(self) -> bool:
        return not self.get_violations()

    def count_operations(self, entity: Optional[str] = None) -> Dict[str, int]:
        """Homomorphic operation counts, optionally for one party"""
        entries = self.get_entries_for_entity(entity) if entity else self.get_all_entries()
        counts: Dict[str, int] = {}
        for entry in entries:
            counts[entry.operation] = counts.get(entry.operation, 0) + 1
        return counts

    def get_evaluator_summary(self) -> Dict[str, Any]:
        """
        What the evaluating party touched.

        privacy_preserved holds only if every evaluator entry was
        ciphertext, public model constants or metadata.
        """
        evaluator_entries = self.get_entries_for_entity('evaluator')
        data_types_seen = set()
        for entry in evaluator_entries:
            data_types_seen.update(entry.data_types)

        touched_plaintext = DataType.PLAINTEXT.value in data_types_seen
        return {
            'total_operations': len(evaluator_entries),
            'operations': self.count_operations('evaluator'),
            'data_types_handled': sorted(data_types_seen),
            'plaintext_access': touched_plaintext,
            'violations': sum(1 for e in evaluator_entries if not e.is_safe),
            'privacy_preserved': not touched_plaintext
        }

    def generate_audit_report(self) -> Dict[str, Any]:
        """
        Audit report for one scoring session.

        Lists every party seen, the key epochs generated, the evaluator
        privacy summary and any violating entries.
        """
        summary = self.get_evaluator_summary()
        entries = self.get_all_entries()
        epochs = sorted({
            e.details['key_epoch'] for e in entries
            if e.operation == OperationType.KEYGEN.value
        })

        return {
            'report_generated': datetime.now().isoformat(),
            'total_log_entries': len(entries),
            'entities': sorted({e.entity for e in entries}),
            'key_epochs': epochs,
            'evaluator_privacy_audit': summary,
            'security_violations': [e.to_dict() for e in self.get_violations()],
            'conclusion': (
                "PRIVACY PRESERVED: evaluator only handled ciphertext."
                if summary['privacy_preserved']
                else "PRIVACY VIOLATION: evaluator handled plaintext features!"
            )
        }

    # ==================== PERSISTENCE ====================

    def _append_to_file(self, entry: SecurityLogEntry):
        """Append one entry as a JSON line (caller holds the lock)"""
        with open(self.log_file, 'a') as f:
            f.write(json.dumps(entry.to_dict()) + '\n')

    def _load_from_file(self):
        """Restore entries and continue the sequence numbering"""
        with open(self.log_file, 'r') as f:
            for line in f:
                if not line.strip():
                    continue
                entry = SecurityLogEntry(**json.loads(line))
                self._entries.append(entry)
                self._sequence = max(self._sequence, entry.sequence_id)

    def clear(self):
        """Drop every entry and delete the log file"""
        with self._lock:
            self._entries.clear()
            self._sequence = 0
            if self.log_file and self.log_file.exists():
                self.log_file.unlink()
