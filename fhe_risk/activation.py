"""
Approximate Sigmoid on Ciphertexts
==================================

CKKS evaluates additions and multiplications only, so the logistic
sigmoid is replaced by its first-order expansion around 0:

    sigmoid(x) ≈ a + b·x          (a = 0.5, b = 0.125 by default)

This needs one multiply_plain and one add_plain: depth 1, no
relinearization (a plaintext product does not grow the ciphertext).

Validity:
---------
The line tracks the sigmoid only inside a bounded domain (about [-4, 4]
for the defaults). Past it the approximation leaves [0, 1] and diverges
from the true sigmoid, so scores whose implied linear input lies near or
beyond the domain edge are reported as unreliable.
"""

import math
from dataclasses import dataclass
from typing import Optional, Tuple

from .config import ActivationConfig
from .fhe_engine import CKKSEngine, EncryptedValue


def _sigmoid(x: float) -> float:
    if x >= 0:
        return 1.0 / (1.0 + math.exp(-x))
    z = math.exp(x)
    return z / (1.0 + z)


@dataclass
class RiskAssessment:
    """Interpretation of a decrypted activation output"""
    raw_score: float          # Decrypted a + b·x
    risk_score: float         # Clamped to [0, 1]
    band: str                 # 'low', 'moderate' or 'high'
    linear_score: float       # x recovered from the output
    reliable: bool            # False near or outside the valid domain
    sigmoid_reference: float  # True sigmoid at linear_score
    interpretation: str

    def to_dict(self) -> dict:
        return {
            'raw_score': round(self.raw_score, 4),
            'risk_score': round(self.risk_score, 4),
            'band': self.band,
            'linear_score': round(self.linear_score, 4),
            'reliable': self.reliable,
            'sigmoid_reference': round(self.sigmoid_reference, 4),
            'interpretation': self.interpretation
        }


class ApproxActivation:
    """First-order sigmoid substitute evaluated on ciphertexts"""

    def __init__(self, engine: Optional[CKKSEngine], config: ActivationConfig):
        """
        Args:
            engine: CKKS engine (may be None for plaintext-only use)
            config: Coefficients, valid domain and risk bands
        """
        self.engine = engine
        self.config = config

    @property
    def multiplicative_depth(self) -> int:
        return 1

    def apply(self, encrypted_linear_score: EncryptedValue) -> EncryptedValue:
        """
        E(a + b·x) from E(x), one level below the input.

        Raises:
            LevelExhausted: input already at the last level
        """
        engine = self.engine
        x = encrypted_linear_score
        engine.require_levels(x, 1, "rescale the activation product")

        b_plain = engine.encode_constant(self.config.b, x.scale, x.level)
        scaled = engine.rescale(engine.multiply_plain(x, b_plain))

        a_plain = engine.encode_constant(self.config.a, scaled.scale, scaled.level)
        return engine.add_plain(scaled, a_plain)

    # ==================== PLAINTEXT REFERENCE ====================

    def evaluate_plain(self, x: float) -> float:
        return self.config.a + self.config.b * x

    def invert(self, score: float) -> float:
        """Linear score x that produces `score`"""
        return (score - self.config.a) / self.config.b

    def in_domain(self, x: float) -> bool:
        low, high = self.config.domain
        return low <= x <= high

    def is_reliable(self, x: float) -> bool:
        """Inside the domain and not within boundary_margin of its edges"""
        low, high = self.config.domain
        margin = self.config.boundary_margin
        return (low + margin) <= x <= (high - margin)

    def output_range(self, interval: Optional[Tuple[float, float]] = None):
        """Range of a + b·x over `interval` (the valid domain by default)"""
        low, high = interval or self.config.domain
        ends = sorted((self.evaluate_plain(low), self.evaluate_plain(high)))
        return ends[0], ends[1]

    def interpret(self, decrypted_score: float) -> RiskAssessment:
        """
        Classify a decrypted score into a risk band.

        Called by the decrypting party after ResultDecoder.decrypt().
        """
        clamped = max(0.0, min(1.0, decrypted_score))
        x = self.invert(decrypted_score)
        reliable = self.is_reliable(x)

        if clamped < self.config.low_band:
            band = 'low'
        elif clamped > self.config.high_band:
            band = 'high'
        else:
            band = 'moderate'

        interpretation = f"{band.upper()} risk (score: {clamped:.3f})"
        if not reliable:
            interpretation += " - linear score near or outside the approximation domain"

        return RiskAssessment(
            raw_score=decrypted_score,
            risk_score=clamped,
            band=band,
            linear_score=x,
            reliable=reliable,
            sigmoid_reference=_sigmoid(x),
            interpretation=interpretation
        )
