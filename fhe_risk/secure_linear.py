"""
Secure Linear Evaluation
========================
Encrypted affine transform of the feature vector:

    E(score) = Σ E(w_i) × E(x_i) + E(bias)

The sum lands in slot 0; every other slot of the result holds partial
sums and must be ignored.

Level budget: one level for the weight product. The bias is mod-switched
down to wherever the accumulator ends up, never the other way round.
"""

import dataclasses
import math
from typing import Callable, List, Optional, Sequence

from .exceptions import DimensionError
from .fhe_engine import CKKSEngine, EncryptedValue


def rotation_steps(n: int) -> List[int]:
    """
    Offsets of the rotate-and-add reduction for n packed values.

    ceil(log2(n)) power-of-two steps: 1 feature needs none, 2 features a
    single rotate-by-1, 5 features rotate by 1, 2 and 4.
    """
    if n < 1:
        raise DimensionError(f"Cannot reduce {n} values")
    return [1 << k for k in range(math.ceil(math.log2(n)))] if n > 1 else []


class SecureLinearEvaluator:
    """
    Weighted sum plus bias on an encrypted feature vector.

    With encrypt_weights=True the weights are encrypted and multiplied
    ciphertext×ciphertext (relinearization required). With False they stay
    plaintext and the cheaper ciphertext×plaintext product is used; the
    level and scale bookkeeping is the same either way.
    """

    def __init__(self, engine: CKKSEngine, encrypt_weights: bool = True):
        self.engine = engine
        self.encrypt_weights = encrypt_weights

    def _check_dimensions(self, encrypted_features: EncryptedValue, weights: Sequence[float]):
        slot_count = self.engine.session.slot_count
        if len(weights) == 0:
            raise DimensionError("Weight vector is empty")
        if len(weights) > slot_count:
            raise DimensionError(
                f"{len(weights)} weights exceed slot capacity {slot_count}"
            )
        if encrypted_features.length and encrypted_features.length != len(weights):
            raise DimensionError(
                f"{len(weights)} weights for {encrypted_features.length} encrypted features"
            )

    def weighted_product(self,
                         encrypted_features: EncryptedValue,
                         weights: Sequence[float]) -> EncryptedValue:
        """
        E([w_0*x_0, w_1*x_1, ...]) at nominal scale, one level down.
        """
        self._check_dimensions(encrypted_features, weights)
        engine = self.engine
        engine.require_levels(encrypted_features, 1, "multiply and rescale the weighted features")

        w_plain = engine.encode(list(weights), encrypted_features.scale, encrypted_features.level)
        if self.encrypt_weights:
            product = engine.multiply(encrypted_features, engine.encrypt(w_plain))
            product = engine.relinearize(product)
        else:
            product = engine.multiply_plain(encrypted_features, w_plain)

        return engine.rescale(product)

    def rotate_and_sum(self, encrypted: EncryptedValue, n: int) -> EncryptedValue:
        """Fold the first n slots into slot 0 (binary-tree reduction)"""
        accumulator = encrypted
        for step in rotation_steps(n):
            rotated = self.engine.rotate(accumulator, step)
            accumulator = self.engine.add(accumulator, rotated)
        return dataclasses.replace(accumulator, length=1)

    def dot_product_plus_bias(self,
                              encrypted_features: EncryptedValue,
                              weights: Sequence[float],
                              bias: float,
                              log_callback: Optional[Callable] = None) -> EncryptedValue:
        """
        Compute E(Σ weights[i]*features[i] + bias) into slot 0.

        Args:
            encrypted_features: Encrypted feature vector at nominal scale
            weights: One weight per feature
            bias: Model intercept
            log_callback: Optional callback for logging steps

        Returns:
            Ciphertext at nominal scale, one level below the input

        Raises:
            DimensionError: weights length mismatch or over slot capacity
            LevelExhausted: input already at the last level
        """
        engine = self.engine
        weights = [float(w) for w in weights]

        product = self.weighted_product(encrypted_features, weights)
        if log_callback:
            log_callback(f"E(w) × E(x) -> level {product.level}, size {product.size}")

        summed = self.rotate_and_sum(product, len(weights))
        if log_callback:
            log_callback(f"rotate-and-sum over {len(weights)} slots "
                         f"({len(rotation_steps(len(weights)))} rotations)")

        bias_plain = engine.encode([float(bias)], engine.session.global_scale)
        if self.encrypt_weights:
            bias_value = engine.mod_switch_down(engine.encrypt(bias_plain), summed.level)
            result = engine.add(summed, bias_value)
        else:
            result = engine.add_plain(summed, bias_plain)

        if log_callback:
            log_callback(f"+ bias -> E(linear score) at level {result.level}")
        return result
