"""
CKKS Engine - Leveled Homomorphic Primitives
=============================================
Wraps the low-level Microsoft SEAL bindings shipped with TenSEAL
(tenseal.sealapi) and tracks the three ciphertext attributes the
scoring circuit depends on:

- scale: fixed-point exponent of the encoding (nominal 2^40)
- level: chain index in the modulus chain, only ever decreases
- size:  2 after relinearization, 3 right after a ciphertext product

The high-level ts.ckks_vector API hides rescaling and mod-switching behind
auto_rescale/auto_mod_switch. Here every step is explicit so the level and
scale invariants of the circuit can be checked before SEAL is called.

Every operation returns a new value; inputs are never modified.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence, Tuple

import numpy as np
import tenseal.sealapi as sealapi

from .exceptions import (
    DimensionError,
    HomomorphicError,
    LevelExhausted,
    NotInitialized,
    ParameterError,
    ScaleMismatchError,
)
from .security_logger import DataType, OperationType, SecurityLogger


# Relative drift between the rescaled scale and the nominal scale that is
# absorbed when pinning back to nominal (the dropped prime is not exactly 2^40)
RESCALE_DRIFT = 1e-3


def _read(obj, name: str):
    """Read a SEAL attribute exposed either as a property or a getter."""
    value = getattr(obj, name)
    return value() if callable(value) else value


def _set_scale(obj, scale: float):
    # Handle different TenSEAL API versions
    setter = getattr(obj, 'set_scale', None)
    if setter is not None:
        setter(scale)
    else:
        obj.scale = scale


def _relative_gap(a: float, b: float) -> float:
    return abs(a - b) / max(abs(a), abs(b))


@dataclass(frozen=True)
class EncryptedValue:
    """
    Ciphertext plus the bookkeeping needed to use it correctly.

    The ciphertext itself is opaque; scale/level/size mirror what SEAL
    reports for it at the time it was produced.
    """
    data: Any  # sealapi.Ciphertext
    scale: float
    level: int
    size: int
    key_epoch: int = 0
    length: int = 0  # meaningful slots, 0 when unknown

    @property
    def is_relinearized(self) -> bool:
        return self.size == 2


@dataclass(frozen=True)
class PlainValue:
    """Encoded (unencrypted) plaintext with its scale and level"""
    data: Any  # sealapi.Plaintext
    scale: float
    level: int
    length: int = 0


@dataclass(frozen=True)
class HESession:
    """
    Immutable public view of a keyed CKKS session.

    Holds the SEAL context, the public-facing keys and the stateless helper
    objects built from them. Safe to share between threads: nothing here is
    mutated after construction, and SEAL's Evaluator/Encryptor/CKKSEncoder
    are const with respect to their inputs.
    """
    context: Any              # sealapi.SEALContext
    encoder: Any              # sealapi.CKKSEncoder
    encryptor: Any            # sealapi.Encryptor
    evaluator: Any            # sealapi.Evaluator
    public_key: Any = field(repr=False)
    relin_keys: Any = field(repr=False)
    galois_keys: Any = field(repr=False)
    parms_ids: Tuple[Any, ...] = field(repr=False)  # indexed by level
    poly_modulus_degree: int = 8192
    global_scale: float = 2.0 ** 40
    scale_tolerance: float = 1e-6
    key_epoch: int = 0

    @property
    def slot_count(self) -> int:
        return self.poly_modulus_degree // 2

    @property
    def top_level(self) -> int:
        return len(self.parms_ids) - 1

    def level_of(self, seal_object) -> int:
        parms_id = _read(seal_object, 'parms_id')
        return _read(self.context.get_context_data(parms_id), 'chain_index')

    def parms_id_at(self, level: int):
        if level < 0 or level > self.top_level:
            raise LevelExhausted("select level", self.top_level, level)
        return self.parms_ids[level]


# ==================== COLLABORATOR SETUP ====================

def build_context(poly_modulus_degree: int, coeff_mod_bit_sizes: Sequence[int]):
    """
    Create a SEAL context for CKKS at 128-bit security.

    Raises:
        ParameterError: If SEAL rejects the parameter combination
    """
    parms = sealapi.EncryptionParameters(sealapi.SCHEME_TYPE.CKKS)
    parms.set_poly_modulus_degree(poly_modulus_degree)
    parms.set_coeff_modulus(
        sealapi.CoeffModulus.Create(poly_modulus_degree, list(coeff_mod_bit_sizes))
    )
    context = sealapi.SEALContext(parms, True, sealapi.SEC_LEVEL_TYPE.TC128)
    if not context.parameters_set():
        raise ParameterError(
            f"SEAL rejected parameters: degree={poly_modulus_degree}, "
            f"chain={list(coeff_mod_bit_sizes)}"
        )
    return context


def chain_parms_ids(context) -> Tuple[Any, ...]:
    """parms_id of every data level, indexed by chain index"""
    ids = {}
    context_data = context.first_context_data()
    while context_data is not None:
        ids[_read(context_data, 'chain_index')] = _read(context_data, 'parms_id')
        context_data = context_data.next_context_data()
    return tuple(ids[level] for level in sorted(ids))


def keygen(context) -> Tuple[Any, Any, Any, Any]:
    """Generate (secret, public, relin, galois) keys for a context"""
    generator = sealapi.KeyGenerator(context)
    secret_key = generator.secret_key()

    public_key = sealapi.PublicKey()
    generator.create_public_key(public_key)

    relin_keys = sealapi.RelinKeys()
    generator.create_relin_keys(relin_keys)

    # Power-of-two steps, which is all the rotate-and-sum reduction uses
    galois_keys = sealapi.GaloisKeys()
    generator.create_galois_keys(galois_keys)

    return secret_key, public_key, relin_keys, galois_keys


# ==================== ENGINE ====================

class CKKSEngine:
    """
    Leveled CKKS primitives over an HESession.

    The engine holds no key material of its own and no mutable state apart
    from an optional reference to the (thread-safe) audit log. Anyone with
    the public session can encrypt and evaluate; decryption needs a
    PrivateCKKSEngine.
    """

    def __init__(self,
                 session: HESession,
                 audit: Optional[SecurityLogger] = None,
                 entity: str = 'evaluator'):
        if session is None:
            raise NotInitialized("No key material: generate keys before using the engine")
        self.session = session
        self.audit = audit
        self.entity = entity

    # ---------- bookkeeping ----------

    def _wrap(self, ciphertext, like: EncryptedValue = None, length: int = 0) -> EncryptedValue:
        return EncryptedValue(
            data=ciphertext,
            scale=_read(ciphertext, 'scale'),
            level=self.session.level_of(ciphertext),
            size=_read(ciphertext, 'size'),
            key_epoch=self.session.key_epoch if like is None else like.key_epoch,
            length=length if like is None else like.length
        )

    def _wrap_plain(self, plaintext, length: int = 0) -> PlainValue:
        return PlainValue(
            data=plaintext,
            scale=_read(plaintext, 'scale'),
            level=self.session.level_of(plaintext),
            length=length
        )

    def _record(self, operation: OperationType, result, data_types=None, **details):
        if self.audit is None:
            return
        details.update({'level': result.level, 'scale_bits': round(float(np.log2(result.scale)), 3)})
        if isinstance(result, EncryptedValue):
            details['size'] = result.size
        self.audit.log(
            entity=self.entity,
            operation=operation,
            data_types=data_types or [DataType.CIPHERTEXT],
            details=details
        )

    def _check_scales(self, scale_a: float, scale_b: float):
        if _relative_gap(scale_a, scale_b) > self.session.scale_tolerance:
            raise ScaleMismatchError(scale_a, scale_b, self.session.scale_tolerance)

    def _with_scale(self, value: EncryptedValue, scale: float) -> EncryptedValue:
        if value.scale == scale:
            return value
        copy = sealapi.Ciphertext(value.data)
        _set_scale(copy, scale)
        return self._wrap(copy, like=value)

    @staticmethod
    def require_levels(value, needed: int, operation: str):
        """Fail before SEAL does when fewer than `needed` rescales remain"""
        if value.level < needed:
            raise LevelExhausted(operation, value.level)

    @staticmethod
    def _require_relinearized(value: EncryptedValue, operation: str):
        if value.size != 2:
            raise HomomorphicError(
                f"Cannot {operation} a size-{value.size} ciphertext: relinearize first"
            )

    # ---------- encoding ----------

    def encode(self,
               values: Sequence[float],
               scale: float = None,
               level: int = None) -> PlainValue:
        """
        Encode reals into slots at `scale`; unused slots are zero.

        The plaintext is produced at the top of the chain and switched down
        to `level` when one is given.
        """
        if len(values) > self.session.slot_count:
            raise DimensionError(
                f"{len(values)} values exceed slot capacity {self.session.slot_count}"
            )
        scale = self.session.global_scale if scale is None else scale
        padded = np.zeros(self.session.slot_count, dtype=np.float64)
        padded[:len(values)] = np.asarray(values, dtype=np.float64)

        plaintext = sealapi.Plaintext()
        self.session.encoder.encode(padded.tolist(), scale, plaintext)
        result = self._wrap_plain(plaintext, length=len(values))
        if level is not None:
            result = self.mod_switch_down(result, level)
        return result

    def encode_constant(self, value: float, scale: float = None, level: int = None) -> PlainValue:
        """Encode a scalar broadcast to every slot"""
        return self.encode([float(value)] * self.session.slot_count, scale, level)

    def decode(self, plain: PlainValue) -> List[float]:
        return list(self.session.encoder.decode_double(plain.data))

    # ---------- encryption ----------

    def encrypt(self, plain: PlainValue) -> EncryptedValue:
        ciphertext = sealapi.Ciphertext()
        self.session.encryptor.encrypt(plain.data, ciphertext)
        result = self._wrap(ciphertext, length=plain.length)
        self._record(OperationType.ENCRYPT, result, slots_used=plain.length)
        return result

    # ---------- level management ----------

    def mod_switch_down(self, value, target_level: int):
        """
        Switch a ciphertext or plaintext down to `target_level`.

        Raises:
            LevelExhausted: If the target is above the current level or
                below the end of the chain
        """
        if target_level == value.level:
            return value
        if target_level > value.level or target_level < 0:
            raise LevelExhausted("mod-switch", value.level, target_level)

        parms_id = self.session.parms_id_at(target_level)
        if isinstance(value, PlainValue):
            plaintext = sealapi.Plaintext()
            self.session.evaluator.mod_switch_to(value.data, parms_id, plaintext)
            return self._wrap_plain(plaintext, length=value.length)

        ciphertext = sealapi.Ciphertext()
        self.session.evaluator.mod_switch_to(value.data, parms_id, ciphertext)
        result = self._wrap(ciphertext, like=value)
        self._record(OperationType.MOD_SWITCH, result, from_level=value.level)
        return result

    def align_levels(self, a, b):
        """Bring the shallower operand down to the deeper one's level"""
        if a.level > b.level:
            a = self.mod_switch_down(a, b.level)
        elif b.level > a.level:
            b = self.mod_switch_down(b, a.level)
        return a, b

    def rescale(self, value: EncryptedValue) -> EncryptedValue:
        """
        Divide out the last prime of the current level, consuming one level.

        The resulting scale is pinned back to the nominal scale when it is
        within RESCALE_DRIFT of it.
        """
        if value.level == 0:
            raise LevelExhausted("rescale", value.level)

        ciphertext = sealapi.Ciphertext()
        self.session.evaluator.rescale_to_next(value.data, ciphertext)
        nominal = self.session.global_scale
        if _relative_gap(_read(ciphertext, 'scale'), nominal) <= RESCALE_DRIFT:
            _set_scale(ciphertext, nominal)

        result = self._wrap(ciphertext, like=value)
        self._record(OperationType.RESCALE, result, from_level=value.level)
        return result

    # ---------- arithmetic ----------

    def add(self, a: EncryptedValue, b: EncryptedValue) -> EncryptedValue:
        a, b = self.align_levels(a, b)
        self._check_scales(a.scale, b.scale)
        b = self._with_scale(b, a.scale)

        ciphertext = sealapi.Ciphertext()
        self.session.evaluator.add(a.data, b.data, ciphertext)
        result = self._wrap(ciphertext, like=a)
        self._record(OperationType.ADD, result)
        return result

    def sub(self, a: EncryptedValue, b: EncryptedValue) -> EncryptedValue:
        a, b = self.align_levels(a, b)
        self._check_scales(a.scale, b.scale)
        b = self._with_scale(b, a.scale)

        ciphertext = sealapi.Ciphertext()
        self.session.evaluator.sub(a.data, b.data, ciphertext)
        result = self._wrap(ciphertext, like=a)
        self._record(OperationType.SUBTRACT, result)
        return result

    def add_plain(self, a: EncryptedValue, plain: PlainValue) -> EncryptedValue:
        a, plain = self.align_levels(a, plain)
        self._check_scales(a.scale, plain.scale)

        ciphertext = sealapi.Ciphertext()
        self.session.evaluator.add_plain(a.data, plain.data, ciphertext)
        result = self._wrap(ciphertext, like=a)
        self._record(OperationType.ADD_PLAIN, result, [DataType.CIPHERTEXT, DataType.PUBLIC_PARAM])
        return result

    def multiply(self, a: EncryptedValue, b: EncryptedValue) -> EncryptedValue:
        """Ciphertext product: scale multiplies, size grows to 3"""
        self._require_relinearized(a, "multiply")
        self._require_relinearized(b, "multiply")
        a, b = self.align_levels(a, b)

        ciphertext = sealapi.Ciphertext()
        self.session.evaluator.multiply(a.data, b.data, ciphertext)
        result = self._wrap(ciphertext, like=a)
        self._record(OperationType.MULTIPLY, result)
        return result

    def multiply_plain(self, a: EncryptedValue, plain: PlainValue) -> EncryptedValue:
        """Ciphertext-plaintext product: scale multiplies, size unchanged"""
        a, plain = self.align_levels(a, plain)

        ciphertext = sealapi.Ciphertext()
        self.session.evaluator.multiply_plain(a.data, plain.data, ciphertext)
        result = self._wrap(ciphertext, like=a)
        self._record(OperationType.MULTIPLY_PLAIN, result,
                     [DataType.CIPHERTEXT, DataType.PUBLIC_PARAM])
        return result

    def relinearize(self, value: EncryptedValue) -> EncryptedValue:
        if value.size == 2:
            return value
        ciphertext = sealapi.Ciphertext()
        self.session.evaluator.relinearize(value.data, self.session.relin_keys, ciphertext)
        result = self._wrap(ciphertext, like=value)
        self._record(OperationType.RELINEARIZE, result, from_size=value.size)
        return result

    def rotate(self, value: EncryptedValue, steps: int) -> EncryptedValue:
        """Cyclic left rotation: slot i receives slot i + steps"""
        self._require_relinearized(value, "rotate")
        ciphertext = sealapi.Ciphertext()
        self.session.evaluator.rotate_vector(value.data, steps, self.session.galois_keys, ciphertext)
        result = self._wrap(ciphertext, like=value)
        self._record(OperationType.ROTATE, result, steps=steps)
        return result

    def get_info(self) -> dict:
        """Get engine configuration information"""
        return {
            'scheme': 'CKKS',
            'poly_modulus_degree': self.session.poly_modulus_degree,
            'slot_count': self.session.slot_count,
            'top_level': self.session.top_level,
            'global_scale': self.session.global_scale,
            'key_epoch': self.session.key_epoch,
            'can_decrypt': False
        }


class PrivateCKKSEngine(CKKSEngine):
    """
    Engine for the decrypting party only.

    Adds decryption on top of the public primitives. Neither the secret key
    nor a Decryptor is stored here: every decrypt asks `decryptor_source`
    for the current one, so closing or rotating the owning KeyManager
    revokes every engine it handed out.
    """

    def __init__(self,
                 session: HESession,
                 decryptor_source: Callable[[], Any],
                 audit: Optional[SecurityLogger] = None,
                 entity: str = 'decryptor'):
        """
        Args:
            session: Public session the ciphertexts belong to
            decryptor_source: Returns the live sealapi.Decryptor, raising
                NotInitialized once the key has been released
            audit: Optional audit log
            entity: Audit entity name
        """
        super().__init__(session, audit, entity)
        if decryptor_source is None:
            raise NotInitialized("Cannot decrypt: no secret key in this session")
        self._decryptor_source = decryptor_source

    def decrypt(self, value: EncryptedValue) -> PlainValue:
        """
        Raises:
            NotInitialized: The secret key was released (close or rotation)
        """
        decryptor = self._decryptor_source()
        plaintext = sealapi.Plaintext()
        decryptor.decrypt(value.data, plaintext)
        result = self._wrap_plain(plaintext)
        self._record(OperationType.DECRYPT, result, [DataType.CIPHERTEXT, DataType.PLAINTEXT])
        return result

    def get_info(self) -> dict:
        info = super().get_info()
        info['can_decrypt'] = True
        return info
