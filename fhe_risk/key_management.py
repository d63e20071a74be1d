"""
Key Management for the Encrypted Risk Pipeline
===============================================
Chooses CKKS parameters for the circuit depth and generates the key set.

Key Distribution Model:
1. The decrypting party (patient side) generates parameters and all keys
2. The public session (public, relinearization and Galois keys) is shared
   with whoever evaluates the model
3. The secret key never leaves this manager; private engines fetch the
   Decryptor from it on every decrypt, so close() and key rotation revoke
   them
4. Regenerating keys starts a new key epoch: ciphertexts from earlier
   epochs decrypt to garbage under the new secret key
"""

import hashlib
import json
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Optional, Tuple

import tenseal.sealapi as sealapi

from .config import EncryptionConfig
from .exceptions import NotInitialized, ParameterError
from .fhe_engine import (
    CKKSEngine,
    HESession,
    PrivateCKKSEngine,
    build_context,
    chain_parms_ids,
    keygen,
)
from .security_logger import SecurityLogger


# Largest total coefficient modulus (bits) per ring degree at 128-bit security
MAX_COEFF_BITS_128 = {
    1024: 27,
    2048: 54,
    4096: 109,
    8192: 218,
    16384: 438,
    32768: 881,
}

# Degrees considered when choosing automatically (smaller ones leave too few slots)
AUTO_DEGREES = (8192, 16384, 32768)


@dataclass(frozen=True)
class EncryptionParameters:
    """
    Ring degree and modulus chain, fixed for the session.

    The chain lists prime bit sizes: a special prime first, one prime per
    rescale, and a special prime last (used for key switching only).
    """
    poly_modulus_degree: int
    coeff_mod_bit_sizes: Tuple[int, ...]
    scale_bits: int

    @property
    def slot_count(self) -> int:
        return self.poly_modulus_degree // 2

    @property
    def level_count(self) -> int:
        """Number of data levels (the key-switching prime is not one)"""
        return len(self.coeff_mod_bit_sizes) - 1

    @property
    def top_level(self) -> int:
        return self.level_count - 1

    @property
    def usable_depth(self) -> int:
        """How many rescales a fresh ciphertext can go through"""
        return self.level_count - 1

    @property
    def total_bits(self) -> int:
        return sum(self.coeff_mod_bit_sizes)


@dataclass(frozen=True)
class KeySet:
    """
    The four SEAL keys of a session.

    The secret key is excluded from repr and refuses to be pickled.
    """
    secret_key: Any = field(repr=False)
    public_key: Any = field(repr=False)
    relin_keys: Any = field(repr=False)
    galois_keys: Any = field(repr=False)
    epoch: int = 0

    def __reduce__(self):
        raise TypeError("KeySet holds a secret key and cannot be exported")


@dataclass
class KeyMetadata:
    """Metadata about a key set (never contains key material)"""
    context_hash: str
    created_at: str
    key_epoch: int
    poly_modulus_degree: int
    coeff_mod_bit_sizes: Tuple[int, ...]
    security_level: str
    has_secret_key: bool

    def to_dict(self) -> dict:
        d = asdict(self)
        d['coeff_mod_bit_sizes'] = list(self.coeff_mod_bit_sizes)
        return d


class KeyManager:
    """
    Parameter selection and key lifecycle for one session.

    Usable as a context manager: leaving the scope releases the secret key
    (SEAL clears secret key memory when the last reference goes away) and
    all derived objects.
    """

    def __init__(self,
                 config: Optional[EncryptionConfig] = None,
                 audit: Optional[SecurityLogger] = None):
        """
        Initialize key manager.

        Args:
            config: CKKS parameter choices (auto-derived when fields are None)
            audit: Optional audit log shared with the engines
        """
        self.config = config or EncryptionConfig()
        self.audit = audit

        self.parameters: Optional[EncryptionParameters] = None
        self._keys: Optional[KeySet] = None
        self._session: Optional[HESession] = None
        self._decryptor = None
        self._metadata: Optional[KeyMetadata] = None
        self._epoch = 0
        self._closed = False

    # ==================== PARAMETERS ====================

    def generate_parameters(self, target_depth: int) -> EncryptionParameters:
        """
        Pick a ring degree and modulus chain with target_depth + 1 levels.

        Args:
            target_depth: Number of multiply+rescale steps in the circuit

        Returns:
            EncryptionParameters for the session

        Raises:
            ParameterError: If the chain is too short for target_depth or no
                ring degree can hold it at 128-bit security
        """
        self._ensure_open()
        if target_depth < 1:
            raise ParameterError(f"Circuit depth must be at least 1, got {target_depth}")

        if self.config.coeff_mod_bit_sizes is not None:
            chain = tuple(self.config.coeff_mod_bit_sizes)
        else:
            special = self.config.special_prime_bits
            chain = (special,) + (self.config.scale_bits,) * target_depth + (special,)

        levels = len(chain) - 1
        if levels < target_depth + 1:
            raise ParameterError(
                f"Modulus chain {list(chain)} has {levels} levels, "
                f"circuit of depth {target_depth} needs {target_depth + 1}"
            )

        total_bits = sum(chain)
        if self.config.poly_modulus_degree is not None:
            degree = self.config.poly_modulus_degree
            bound = MAX_COEFF_BITS_128.get(degree)
            if bound is None:
                raise ParameterError(f"Unsupported poly_modulus_degree: {degree}")
            if total_bits > bound:
                raise ParameterError(
                    f"Chain of {total_bits} bits exceeds {bound} bits allowed "
                    f"for degree {degree} at 128-bit security"
                )
        else:
            candidates = [d for d in AUTO_DEGREES if MAX_COEFF_BITS_128[d] >= total_bits]
            if not candidates:
                raise ParameterError(
                    f"No ring degree supports a {total_bits}-bit modulus chain "
                    f"(depth {target_depth}) at 128-bit security"
                )
            degree = candidates[0]

        self.parameters = EncryptionParameters(
            poly_modulus_degree=degree,
            coeff_mod_bit_sizes=chain,
            scale_bits=self.config.scale_bits
        )
        return self.parameters

    # ==================== KEYS ====================

    def generate_keys(self) -> HESession:
        """
        Generate a fresh key set and the public session built from it.

        Calling this again rotates keys: everything encrypted under the
        previous epoch can no longer be decrypted meaningfully.

        Returns:
            The public HESession
        """
        self._ensure_open()
        if self.parameters is None:
            raise NotInitialized("Call generate_parameters() before generate_keys()")

        params = self.parameters
        context = build_context(params.poly_modulus_degree, params.coeff_mod_bit_sizes)
        secret_key, public_key, relin_keys, galois_keys = keygen(context)

        self._epoch += 1
        self._keys = KeySet(
            secret_key=secret_key,
            public_key=public_key,
            relin_keys=relin_keys,
            galois_keys=galois_keys,
            epoch=self._epoch
        )
        self._session = HESession(
            context=context,
            encoder=sealapi.CKKSEncoder(context),
            encryptor=sealapi.Encryptor(context, public_key),
            evaluator=sealapi.Evaluator(context),
            public_key=public_key,
            relin_keys=relin_keys,
            galois_keys=galois_keys,
            parms_ids=chain_parms_ids(context),
            poly_modulus_degree=params.poly_modulus_degree,
            global_scale=self.config.global_scale,
            scale_tolerance=self.config.scale_tolerance,
            key_epoch=self._epoch
        )
        self._decryptor = sealapi.Decryptor(context, secret_key)

        created_at = datetime.now().isoformat()
        self._metadata = KeyMetadata(
            context_hash=self._context_hash(params, self._epoch, created_at),
            created_at=created_at,
            key_epoch=self._epoch,
            poly_modulus_degree=params.poly_modulus_degree,
            coeff_mod_bit_sizes=params.coeff_mod_bit_sizes,
            security_level=f"{self.config.security_level}-bit",
            has_secret_key=True
        )

        if self.audit:
            self.audit.log_keygen(self._epoch, params.poly_modulus_degree,
                                  list(params.coeff_mod_bit_sizes))

        return self._session

    @staticmethod
    def _context_hash(params: EncryptionParameters, epoch: int, created_at: str) -> str:
        payload = json.dumps({
            'degree': params.poly_modulus_degree,
            'chain': list(params.coeff_mod_bit_sizes),
            'epoch': epoch,
            'created_at': created_at
        }, sort_keys=True)
        return hashlib.sha256(payload.encode('utf-8')).hexdigest()[:16]

    # ==================== ACCESS ====================

    def require_session(self) -> HESession:
        """
        Raises:
            NotInitialized: before key generation or after close()
        """
        self._ensure_open()
        if self._session is None:
            raise NotInitialized("No keys generated. Call generate_keys() first.")
        return self._session

    @property
    def session(self) -> HESession:
        return self.require_session()

    def public_session(self) -> HESession:
        """
        The view handed to the evaluator.

        HESession never carries the secret key or a Decryptor, so the
        session itself is already public-only.
        """
        return self.require_session()

    @property
    def has_keys(self) -> bool:
        return self._session is not None

    @property
    def key_epoch(self) -> int:
        return self._epoch

    def public_engine(self, entity: str = 'evaluator') -> CKKSEngine:
        """Engine for encrypting/evaluating; cannot decrypt"""
        return CKKSEngine(self.public_session(), self.audit, entity)

    def private_engine(self) -> PrivateCKKSEngine:
        """
        Engine for the decrypting party.

        The engine is bound to the current key epoch: it stops decrypting
        when this manager is closed or its keys are rotated.
        """
        epoch = self._epoch
        return PrivateCKKSEngine(self.session, lambda: self._decryptor_for(epoch), self.audit)

    def _decryptor_for(self, epoch: int):
        self._ensure_open()
        if self._decryptor is None:
            raise NotInitialized("No keys generated. Call generate_keys() first.")
        if epoch != self._epoch:
            raise NotInitialized(
                f"Secret key of epoch {epoch} was released when keys rotated "
                f"to epoch {self._epoch}"
            )
        return self._decryptor

    def get_metadata(self) -> Optional[KeyMetadata]:
        return self._metadata

    def get_context_hash(self) -> Optional[str]:
        if self._metadata:
            return self._metadata.context_hash
        return None

    # ==================== LIFECYCLE ====================

    def _ensure_open(self):
        if self._closed:
            raise NotInitialized("Key manager has been closed")

    def close(self):
        """Release every key and derived SEAL object"""
        self._decryptor = None
        self._keys = None
        self._session = None
        if self._metadata:
            self._metadata.has_secret_key = False
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self) -> 'KeyManager':
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
