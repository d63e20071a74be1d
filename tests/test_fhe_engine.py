"""
CKKS Engine Tests
=================
Round trips and the scale/level/size bookkeeping of each primitive.
"""

import numpy as np
import pytest

from fhe_risk.exceptions import (
    DimensionError,
    HomomorphicError,
    LevelExhausted,
    NotInitialized,
    ScaleMismatchError,
)
from fhe_risk.fhe_engine import PrivateCKKSEngine

TOLERANCE = 1e-2


def decrypt(private_engine, value, length):
    return private_engine.decode(private_engine.decrypt(value))[:length]


class TestRoundTrip:
    """encode -> encrypt -> decrypt -> decode"""

    @pytest.mark.parametrize("seed", [0, 1, 2])
    def test_random_vectors_round_trip(self, engine, private_engine, seed):
        rng = np.random.default_rng(seed)
        original = rng.uniform(-100, 100, size=8).tolist()

        encrypted = engine.encrypt(engine.encode(original))
        decrypted = decrypt(private_engine, encrypted, len(original))

        for o, d in zip(original, decrypted):
            assert abs(o - d) < TOLERANCE, f"Expected {o}, got {d}"

    def test_fresh_ciphertext_bookkeeping(self, engine):
        encrypted = engine.encrypt(engine.encode([1.0, 2.0, 3.0]))

        assert encrypted.level == engine.session.top_level
        assert encrypted.scale == engine.session.global_scale
        assert encrypted.size == 2
        assert encrypted.length == 3
        assert encrypted.key_epoch == engine.session.key_epoch

    def test_unused_slots_are_zero(self, engine, private_engine):
        encrypted = engine.encrypt(engine.encode([5.0]))
        decrypted = decrypt(private_engine, encrypted, 4)
        assert abs(decrypted[0] - 5.0) < TOLERANCE
        for d in decrypted[1:]:
            assert abs(d) < TOLERANCE

    def test_encode_beyond_slot_capacity(self, engine):
        with pytest.raises(DimensionError):
            engine.encode([0.0] * (engine.session.slot_count + 1))


class TestMultiplication:
    """Scale doubles, size grows, relinearize and rescale restore them"""

    def test_multiply_relinearize_rescale(self, engine, private_engine):
        a = engine.encrypt(engine.encode([1.5, 2.0]))
        b = engine.encrypt(engine.encode([2.0, 3.0]))

        product = engine.multiply(a, b)
        assert product.size == 3
        assert product.scale == pytest.approx(a.scale * b.scale)
        assert product.level == a.level

        relinearized = engine.relinearize(product)
        assert relinearized.size == 2
        assert relinearized.level == a.level

        rescaled = engine.rescale(relinearized)
        assert rescaled.level == a.level - 1
        assert rescaled.scale == engine.session.global_scale

        decrypted = decrypt(private_engine, rescaled, 2)
        assert abs(decrypted[0] - 3.0) < TOLERANCE
        assert abs(decrypted[1] - 6.0) < TOLERANCE

    def test_multiply_requires_relinearized_operands(self, engine):
        a = engine.encrypt(engine.encode([1.0]))
        product = engine.multiply(a, a)
        with pytest.raises(HomomorphicError, match="relinearize"):
            engine.multiply(product, a)

    def test_multiply_plain_keeps_size(self, engine, private_engine):
        a = engine.encrypt(engine.encode([4.0, -2.0]))
        plain = engine.encode_constant(0.25, a.scale)

        product = engine.multiply_plain(a, plain)
        assert product.size == 2
        assert product.scale == pytest.approx(a.scale * plain.scale)

        rescaled = engine.rescale(product)
        decrypted = decrypt(private_engine, rescaled, 2)
        assert abs(decrypted[0] - 1.0) < TOLERANCE
        assert abs(decrypted[1] + 0.5) < TOLERANCE


class TestLevels:
    """Levels only move down; the chain can run out"""

    def test_rescale_at_last_level(self, engine):
        a = engine.encrypt(engine.encode([1.0]))
        bottom = engine.mod_switch_down(a, 0)

        assert bottom.level == 0
        with pytest.raises(LevelExhausted):
            engine.rescale(bottom)

    def test_mod_switch_never_goes_up(self, engine):
        a = engine.encrypt(engine.encode([1.0]))
        bottom = engine.mod_switch_down(a, 0)
        with pytest.raises(LevelExhausted, match="levels only move down"):
            engine.mod_switch_down(bottom, engine.session.top_level)

    def test_mod_switch_below_chain(self, engine):
        a = engine.encrypt(engine.encode([1.0]))
        with pytest.raises(LevelExhausted):
            engine.mod_switch_down(a, -1)

    def test_mod_switch_preserves_value_and_scale(self, engine, private_engine):
        a = engine.encrypt(engine.encode([7.25]))
        switched = engine.mod_switch_down(a, 1)

        assert switched.level == 1
        assert switched.scale == a.scale
        assert abs(decrypt(private_engine, switched, 1)[0] - 7.25) < TOLERANCE

    def test_plaintext_mod_switch(self, engine):
        plain = engine.encode([1.0], level=0)
        assert plain.level == 0

    def test_add_aligns_to_deeper_level(self, engine, private_engine):
        a = engine.encrypt(engine.encode([1.0, 2.0]))
        b = engine.mod_switch_down(engine.encrypt(engine.encode([10.0, 20.0])), 0)

        total = engine.add(a, b)
        assert total.level == 0

        decrypted = decrypt(private_engine, total, 2)
        assert abs(decrypted[0] - 11.0) < TOLERANCE
        assert abs(decrypted[1] - 22.0) < TOLERANCE

    def test_require_levels(self, engine):
        a = engine.encrypt(engine.encode([1.0]))
        engine.require_levels(a, 2, "test")
        with pytest.raises(LevelExhausted):
            engine.require_levels(a, 3, "test")


class TestAddition:
    """Add/subtract need matching scales"""

    def test_scale_mismatch_is_not_coerced(self, engine):
        a = engine.encrypt(engine.encode([1.0]))
        squared = engine.relinearize(engine.multiply(a, a))  # scale 2^80

        with pytest.raises(ScaleMismatchError):
            engine.add(squared, a)
        with pytest.raises(ScaleMismatchError):
            engine.sub(a, squared)

    def test_subtract(self, engine, private_engine):
        a = engine.encrypt(engine.encode([10.0, 20.0]))
        b = engine.encrypt(engine.encode([3.0, 7.0]))

        decrypted = decrypt(private_engine, engine.sub(a, b), 2)
        assert abs(decrypted[0] - 7.0) < TOLERANCE
        assert abs(decrypted[1] - 13.0) < TOLERANCE

    def test_add_plain(self, engine, private_engine):
        a = engine.encrypt(engine.encode([10.0, 20.0]))
        plain = engine.encode_constant(5.0)

        decrypted = decrypt(private_engine, engine.add_plain(a, plain), 2)
        assert abs(decrypted[0] - 15.0) < TOLERANCE
        assert abs(decrypted[1] - 25.0) < TOLERANCE


class TestRotation:

    def test_rotate_left(self, engine, private_engine):
        a = engine.encrypt(engine.encode([1.0, 2.0, 3.0, 4.0]))
        rotated = engine.rotate(a, 1)

        assert rotated.level == a.level
        assert rotated.size == 2
        decrypted = decrypt(private_engine, rotated, 3)
        for expected, d in zip([2.0, 3.0, 4.0], decrypted):
            assert abs(expected - d) < TOLERANCE


class TestDecryptionCapability:

    def test_private_engine_needs_decryptor(self, key_manager):
        with pytest.raises(NotInitialized, match="secret key"):
            PrivateCKKSEngine(key_manager.session, None)

    def test_engine_needs_session(self):
        from fhe_risk.fhe_engine import CKKSEngine
        with pytest.raises(NotInitialized):
            CKKSEngine(None)
