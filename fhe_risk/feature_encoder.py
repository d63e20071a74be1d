"""
Feature Encoding
================
Packs a patient's real-valued features into CKKS slots.
"""

import math
from dataclasses import dataclass
from typing import List, Sequence, Tuple, Union

import numpy as np

from .exceptions import DimensionError
from .fhe_engine import CKKSEngine, EncryptedValue, PlainValue


@dataclass(frozen=True)
class EncodedVector:
    """Encoded features: `length` meaningful slots, the rest zero"""
    plaintext: PlainValue
    values: Tuple[float, ...]
    scale: float

    @property
    def length(self) -> int:
        return len(self.values)

    @property
    def level(self) -> int:
        return self.plaintext.level


class FeatureEncoder:
    """Slot packing for feature and weight vectors"""

    def __init__(self, engine: CKKSEngine):
        self.engine = engine

    @property
    def slot_count(self) -> int:
        return self.engine.session.slot_count

    def _validate(self, values) -> List[float]:
        if isinstance(values, np.ndarray):
            values = values.tolist()
        values = [float(v) for v in values]

        if not values:
            raise DimensionError("Cannot encode an empty vector")
        if len(values) > self.slot_count:
            raise DimensionError(
                f"{len(values)} values exceed slot capacity {self.slot_count}"
            )
        for i, v in enumerate(values):
            if not math.isfinite(v):
                raise DimensionError(f"Value at index {i} is not finite: {v}")
        return values

    def encode(self,
               values: Union[Sequence[float], np.ndarray],
               scale: float = None,
               level: int = None) -> EncodedVector:
        """
        Encode values at `scale` (the session's nominal scale by default).

        Raises:
            DimensionError: If values is empty, longer than the slot
                capacity, or contains NaN/inf
        """
        values = self._validate(values)
        plain = self.engine.encode(values, scale, level)
        return EncodedVector(plaintext=plain, values=tuple(values), scale=plain.scale)

    def encrypt(self, encoded: EncodedVector) -> EncryptedValue:
        return self.engine.encrypt(encoded.plaintext)

    def encrypt_features(self, values: Union[Sequence[float], np.ndarray]) -> EncryptedValue:
        """Encode at the nominal scale and encrypt under the public key"""
        return self.encrypt(self.encode(values))
