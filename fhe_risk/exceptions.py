"""
Error taxonomy for the encrypted risk pipeline.

Every failure aborts the current inference request. Ciphertexts produced
before the failing step are tied to that attempt and must not be reused.
"""


class HomomorphicError(Exception):
    """Base class for all pipeline errors"""


class ParameterError(HomomorphicError):
    """Modulus chain too short (or too wide) for the requested circuit"""


class LevelExhausted(HomomorphicError):
    """No modulus chain level left for a rescale or mod-switch"""

    def __init__(self, operation: str, level: int, target: int = None):
        self.operation = operation
        self.level = level
        self.target = target
        if target is None:
            msg = f"Cannot {operation}: ciphertext already at level {level}, modulus chain exhausted"
        else:
            msg = f"Cannot {operation} from level {level} to level {target}: levels only move down"
        super().__init__(msg)


class ScaleMismatchError(HomomorphicError):
    """Add/subtract operands whose scales differ beyond tolerance"""

    def __init__(self, scale_a: float, scale_b: float, tolerance: float):
        self.scale_a = scale_a
        self.scale_b = scale_b
        self.tolerance = tolerance
        super().__init__(
            f"Scale mismatch: {scale_a:.6e} vs {scale_b:.6e} "
            f"(relative tolerance {tolerance:g})"
        )


class DimensionError(HomomorphicError, ValueError):
    """Feature/weight length exceeds slot capacity or lengths disagree"""


class NotInitialized(HomomorphicError):
    """Operation invoked before keys exist or before its predecessor stage"""


class DecryptionFailure(HomomorphicError):
    """Decoded value is implausible: key mismatch or corrupted ciphertext"""
