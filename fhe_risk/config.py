"""
Session Configuration
=====================
Calibration constants (model weights, activation coefficients) and CKKS
security parameters for one scoring session.

Nothing in the pipeline modules hardcodes these values; they are read from
a RiskConfig, which is normally loaded from JSON. The calibrated diabetes
model ships as default_config.json next to this module.
"""

import json
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import List, Optional, Tuple, Union

from .exceptions import DimensionError, ParameterError


DEFAULT_CONFIG_PATH = Path(__file__).parent / "default_config.json"


@dataclass(frozen=True)
class EncryptionConfig:
    """
    CKKS parameter choices.

    poly_modulus_degree and coeff_mod_bit_sizes may be left as None, in which
    case the key manager derives them from the circuit depth.
    """
    poly_modulus_degree: Optional[int] = None
    coeff_mod_bit_sizes: Optional[Tuple[int, ...]] = None
    scale_bits: int = 40
    special_prime_bits: int = 60
    scale_tolerance: float = 1e-6
    security_level: int = 128

    def __post_init__(self):
        if self.coeff_mod_bit_sizes is not None:
            object.__setattr__(self, 'coeff_mod_bit_sizes', tuple(self.coeff_mod_bit_sizes))
        if self.scale_bits <= 0 or self.special_prime_bits <= 0:
            raise ParameterError("Prime bit sizes must be positive")
        if self.security_level != 128:
            raise ParameterError(f"Unsupported security level: {self.security_level}")

    @property
    def global_scale(self) -> float:
        return float(2 ** self.scale_bits)


@dataclass(frozen=True)
class ModelConfig:
    """Fixed logistic-regression style model: bias + Σ w_i * x_i"""
    bias: float
    weights: Tuple[float, ...]
    feature_names: Tuple[str, ...] = ()
    encrypt_weights: bool = True

    def __post_init__(self):
        object.__setattr__(self, 'weights', tuple(float(w) for w in self.weights))
        object.__setattr__(self, 'feature_names', tuple(self.feature_names))
        if not self.weights:
            raise DimensionError("Model needs at least one weight")
        if self.feature_names and len(self.feature_names) != len(self.weights):
            raise DimensionError(
                f"{len(self.feature_names)} feature names for {len(self.weights)} weights"
            )

    @property
    def feature_count(self) -> int:
        return len(self.weights)


@dataclass(frozen=True)
class ActivationConfig:
    """
    First-order sigmoid substitute: f(x) = a + b * x

    Only trustworthy while the linear score stays inside `domain`.
    """
    a: float
    b: float
    domain: Tuple[float, float] = (-4.0, 4.0)
    boundary_margin: float = 0.5
    low_band: float = 0.3
    high_band: float = 0.7

    def __post_init__(self):
        object.__setattr__(self, 'domain', tuple(float(d) for d in self.domain))
        low, high = self.domain
        if low >= high:
            raise ParameterError(f"Activation domain is empty: {self.domain}")
        if self.b == 0:
            raise ParameterError("Activation slope b must be non-zero")
        if not (self.low_band < self.high_band):
            raise ParameterError("low_band must be below high_band")


@dataclass(frozen=True)
class DecoderConfig:
    """
    Garbage detection on decrypted values.

    max_abs_linear_score bounds any real linear score, far outside the
    activation domain. Scores past the domain but inside this bound are
    returned and flagged unreliable; only values past it are treated as a
    key mismatch or a corrupted ciphertext.
    """
    check_plausibility: bool = True
    max_abs_linear_score: float = 100.0
    tolerance: float = 0.05

    def __post_init__(self):
        if self.max_abs_linear_score <= 0:
            raise ParameterError("max_abs_linear_score must be positive")


@dataclass(frozen=True)
class RiskConfig:
    """Everything a scoring session needs, bundled"""
    model: ModelConfig
    activation: ActivationConfig
    encryption: EncryptionConfig = field(default_factory=EncryptionConfig)
    decoder: DecoderConfig = field(default_factory=DecoderConfig)

    # Multiplicative depth of the fixed circuit: weights product + activation
    CIRCUIT_DEPTH = 2

    @classmethod
    def from_dict(cls, data: dict) -> 'RiskConfig':
        """Build from a plain dict (e.g. parsed JSON)"""
        return cls(
            model=ModelConfig(**data['model']),
            activation=ActivationConfig(**data['activation']),
            encryption=EncryptionConfig(**data.get('encryption', {})),
            decoder=DecoderConfig(**data.get('decoder', {}))
        )

    @classmethod
    def from_json(cls, path: Union[str, Path]) -> 'RiskConfig':
        with open(path, 'r') as f:
            return cls.from_dict(json.load(f))

    @classmethod
    def default(cls) -> 'RiskConfig':
        """Calibrated glucose/BMI diabetes model"""
        return cls.from_json(DEFAULT_CONFIG_PATH)

    def to_dict(self) -> dict:
        return {
            'model': asdict(self.model),
            'activation': asdict(self.activation),
            'encryption': asdict(self.encryption),
            'decoder': asdict(self.decoder)
        }

    def to_json(self, path: Union[str, Path]):
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)
