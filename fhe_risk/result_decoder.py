"""
Result Decoding
===============
Decrypts the final ciphertext and returns slot 0.

SEAL gives no signal when a ciphertext is decrypted under the wrong key or
has run out of noise budget: it simply returns garbage. The only defence at
this layer is a plausibility check against the known output range.
"""

import math
from typing import List, Optional, Tuple

from .exceptions import DecryptionFailure
from .fhe_engine import EncryptedValue, PrivateCKKSEngine


class ResultDecoder:
    """Decrypt + decode for the party holding the secret key"""

    def __init__(self,
                 engine: PrivateCKKSEngine,
                 plausible_range: Optional[Tuple[float, float]] = None,
                 tolerance: float = 0.05):
        """
        Args:
            engine: Engine with decryption capability
            plausible_range: (low, high) expected for slot 0; None disables
                the sanity check
            tolerance: Slack allowed outside plausible_range
        """
        self.engine = engine
        self.plausible_range = plausible_range
        self.tolerance = tolerance

    def decrypt_vector(self, ciphertext: EncryptedValue, length: int = None) -> List[float]:
        """Decrypt and decode; the first `length` slots (all when None)"""
        decoded = self.engine.decode(self.engine.decrypt(ciphertext))
        if length is None:
            length = ciphertext.length or len(decoded)
        return decoded[:length]

    def check(self, value: float) -> float:
        """
        Raises:
            DecryptionFailure: value is NaN/inf or outside the plausible range
        """
        if not math.isfinite(value):
            raise DecryptionFailure(f"Decoded value is not finite: {value}")
        if self.plausible_range is not None:
            low, high = self.plausible_range
            if not (low - self.tolerance <= value <= high + self.tolerance):
                raise DecryptionFailure(
                    f"Decoded value {value:.6g} outside plausible range "
                    f"[{low:g}, {high:g}] - key mismatch or corrupted ciphertext"
                )
        return value

    def decrypt(self, ciphertext: EncryptedValue) -> float:
        """Decrypt, decode and return slot 0; all other slots are discarded"""
        return self.check(self.decrypt_vector(ciphertext, 1)[0])
