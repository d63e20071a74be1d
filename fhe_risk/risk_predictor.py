"""
Encrypted Diabetes Risk Prediction
==================================
Privacy-preserving inference: the patient's features are encrypted once,
the linear model and the sigmoid approximation run on ciphertexts, and only
the final score is decrypted.

    features -> encode -> encrypt -> Σw·x + bias -> a + b·x -> decrypt

Every request walks a fixed sequence of stages:

    INIT -> KEYS_GENERATED -> FEATURES_ENCRYPTED -> LINEAR_EVALUATED
         -> ACTIVATION_APPLIED -> DECRYPTED

Skipping a stage raises NotInitialized. A request that fails is dead: its
ciphertexts carry level/scale state from the failed attempt, so a retry
must start a new request.
"""

import threading
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from .activation import ApproxActivation, RiskAssessment
from .config import RiskConfig
from .exceptions import DimensionError, NotInitialized
from .feature_encoder import FeatureEncoder
from .fhe_engine import EncryptedValue
from .key_management import KeyManager
from .result_decoder import ResultDecoder
from .secure_linear import SecureLinearEvaluator
from .security_logger import SecurityLogger


class Stage(str, Enum):
    """Stages of one inference request"""
    INIT = "init"
    KEYS_GENERATED = "keys_generated"
    FEATURES_ENCRYPTED = "features_encrypted"
    LINEAR_EVALUATED = "linear_evaluated"
    ACTIVATION_APPLIED = "activation_applied"
    DECRYPTED = "decrypted"
    FAILED = "failed"


@dataclass(frozen=True)
class PipelineComponents:
    """Components bound to one key epoch; replaced wholesale on key rotation"""
    key_epoch: int
    encoder: FeatureEncoder
    linear: SecureLinearEvaluator
    activation: ApproxActivation
    decoder: ResultDecoder
    linear_decoder: ResultDecoder


@dataclass
class ScoreResult:
    """Outcome of a full encrypted inference"""
    risk_score: float
    assessment: RiskAssessment
    request_id: str
    key_epoch: int
    final_level: int
    inference_time_ms: float
    stages: List[str]

    def to_dict(self) -> dict:
        return {
            'risk_score': round(self.risk_score, 4),
            'assessment': self.assessment.to_dict(),
            'request_id': self.request_id,
            'key_epoch': self.key_epoch,
            'final_level': self.final_level,
            'inference_time_ms': round(self.inference_time_ms, 2),
            'stages': self.stages
        }


class InferenceRequest:
    """
    One pass through the encrypted circuit.

    Not meant to be shared between threads; the predictor it belongs to is.
    """

    def __init__(self, predictor: 'DiabetesRiskPredictor', request_id: str = None):
        self.predictor = predictor
        self.request_id = request_id or uuid.uuid4().hex[:8]
        self.stage = Stage.INIT
        self.history: List[str] = [Stage.INIT.value]

        self._components: Optional[PipelineComponents] = None
        self.encrypted_features: Optional[EncryptedValue] = None
        self.linear_score: Optional[EncryptedValue] = None
        self.activated: Optional[EncryptedValue] = None
        self.result: Optional[float] = None

    def _advance(self, expected: Stage, target: Stage, step):
        if self.predictor.keys.closed:
            raise NotInitialized(
                f"Request {self.request_id}: predictor has been closed and its keys released"
            )
        if self.stage == Stage.FAILED:
            raise NotInitialized(
                f"Request {self.request_id} failed earlier; start a new request"
            )
        if self.stage != expected:
            raise NotInitialized(
                f"Cannot enter {target.value}: request {self.request_id} is at "
                f"{self.stage.value}, expected {expected.value}"
            )
        try:
            value = step()
        except Exception:
            self.stage = Stage.FAILED
            self.history.append(Stage.FAILED.value)
            raise

        self.stage = target
        self.history.append(target.value)
        if self.predictor.audit:
            self.predictor.audit.log_stage(self.request_id, target.value)
        return value

    def bind_keys(self) -> 'InferenceRequest':
        """Attach the predictor's current key epoch"""
        def step():
            self._components = self.predictor.components
        self._advance(Stage.INIT, Stage.KEYS_GENERATED, step)
        return self

    def encrypt_features(self, features: Sequence[float]) -> EncryptedValue:
        """Client side: encode and encrypt the feature vector"""
        def step():
            expected = self.predictor.config.model.feature_count
            if len(features) != expected:
                raise DimensionError(f"Model expects {expected} features, got {len(features)}")
            encrypted = self._components.encoder.encrypt_features(features)
            if self.predictor.audit:
                self.predictor.audit.log_client_encrypt(len(features), encrypted.level)
            self.encrypted_features = encrypted
            return encrypted
        return self._advance(Stage.KEYS_GENERATED, Stage.FEATURES_ENCRYPTED, step)

    def evaluate_linear(self) -> EncryptedValue:
        """Evaluator side: E(Σw·x + bias)"""
        def step():
            model = self.predictor.config.model
            self.linear_score = self._components.linear.dot_product_plus_bias(
                self.encrypted_features, model.weights, model.bias
            )
            return self.linear_score
        return self._advance(Stage.FEATURES_ENCRYPTED, Stage.LINEAR_EVALUATED, step)

    def apply_activation(self) -> EncryptedValue:
        """Evaluator side: E(a + b·x)"""
        def step():
            self.activated = self._components.activation.apply(self.linear_score)
            return self.activated
        return self._advance(Stage.LINEAR_EVALUATED, Stage.ACTIVATION_APPLIED, step)

    def decrypt(self) -> float:
        """Decrypting party: slot 0 of the activated ciphertext"""
        def step():
            self.result = self._components.decoder.decrypt(self.activated)
            return self.result
        return self._advance(Stage.ACTIVATION_APPLIED, Stage.DECRYPTED, step)

    def run(self, features: Sequence[float]) -> float:
        if self.stage == Stage.INIT:
            self.bind_keys()
        self.encrypt_features(features)
        self.evaluate_linear()
        self.apply_activation()
        return self.decrypt()


class DiabetesRiskPredictor:
    """
    Encrypted risk scoring for a fixed linear model.

    Owns the KeyManager of the session; use as a context manager (or call
    close()) to release key material deterministically.
    """

    def __init__(self,
                 config: Optional[RiskConfig] = None,
                 audit: Optional[SecurityLogger] = None,
                 generate_keys: bool = True):
        """
        Args:
            config: Model, activation and CKKS configuration
                (the calibrated default model when None)
            audit: Optional audit log for every homomorphic step
            generate_keys: Generate parameters and keys immediately
        """
        self.config = config or RiskConfig.default()
        self.audit = audit
        self.keys = KeyManager(self.config.encryption, audit)
        self._components: Optional[PipelineComponents] = None
        self.inference_count = 0
        self._count_lock = threading.Lock()

        if generate_keys:
            self.generate_keys()

    # ==================== KEYS ====================

    def generate_keys(self) -> int:
        """
        Generate (or rotate) the session keys.

        Returns:
            The new key epoch
        """
        if self.keys.parameters is None:
            self.keys.generate_parameters(RiskConfig.CIRCUIT_DEPTH)
        self.keys.generate_keys()

        client = self.keys.public_engine(entity='client')
        evaluator = self.keys.public_engine(entity='evaluator')
        private = self.keys.private_engine()
        activation = ApproxActivation(evaluator, self.config.activation)

        decoder_cfg = self.config.decoder
        if decoder_cfg.check_plausibility:
            bound = decoder_cfg.max_abs_linear_score
            linear_range = (-bound, bound)
            plausible = activation.output_range(linear_range)
        else:
            linear_range = plausible = None

        self._components = PipelineComponents(
            key_epoch=self.keys.key_epoch,
            encoder=FeatureEncoder(client),
            linear=SecureLinearEvaluator(evaluator, self.config.model.encrypt_weights),
            activation=activation,
            decoder=ResultDecoder(private, plausible, decoder_cfg.tolerance),
            linear_decoder=ResultDecoder(private, linear_range, decoder_cfg.tolerance)
        )
        return self.keys.key_epoch

    @property
    def components(self) -> PipelineComponents:
        if self._components is None or self.keys.closed:
            raise NotInitialized("No keys generated. Call generate_keys() first.")
        return self._components

    # ==================== STEP API ====================

    def encrypt_features(self, values: Sequence[float]) -> EncryptedValue:
        return self.components.encoder.encrypt_features(values)

    def encrypt_patient_data(self, glucose: float, bmi: float) -> EncryptedValue:
        """Encrypt [glucose, bmi] for the two-feature model"""
        return self.encrypt_features([glucose, bmi])

    def predict_linear_risk(self, encrypted_features: EncryptedValue) -> EncryptedValue:
        model = self.config.model
        return self.components.linear.dot_product_plus_bias(
            encrypted_features, model.weights, model.bias
        )

    def apply_sigmoid_approx(self, encrypted_x: EncryptedValue) -> EncryptedValue:
        return self.components.activation.apply(encrypted_x)

    def predict_risk_with_sigmoid(self, encrypted_features: EncryptedValue) -> EncryptedValue:
        return self.apply_sigmoid_approx(self.predict_linear_risk(encrypted_features))

    def decrypt_risk_score(self, encrypted_risk: EncryptedValue) -> float:
        return self.components.decoder.decrypt(encrypted_risk)

    def decrypt_linear_score(self, encrypted_linear: EncryptedValue) -> float:
        """Decrypt a linear score, checked against max_abs_linear_score"""
        return self.components.linear_decoder.decrypt(encrypted_linear)

    # ==================== REQUEST API ====================

    def new_request(self, request_id: str = None) -> InferenceRequest:
        return InferenceRequest(self, request_id).bind_keys()

    def score(self, features: Sequence[float]) -> ScoreResult:
        """
        Run one full encrypted inference.

        Args:
            features: Feature values in model order (e.g. [glucose, bmi])

        Returns:
            ScoreResult with the decrypted score and its interpretation
        """
        if isinstance(features, np.ndarray):
            features = features.tolist()

        start = time.perf_counter()
        request = self.new_request()
        risk = request.run(features)
        elapsed_ms = (time.perf_counter() - start) * 1000

        with self._count_lock:
            self.inference_count += 1
        return ScoreResult(
            risk_score=risk,
            assessment=self.components.activation.interpret(risk),
            request_id=request.request_id,
            key_epoch=request.activated.key_epoch,
            final_level=request.activated.level,
            inference_time_ms=elapsed_ms,
            stages=list(request.history)
        )

    def score_patient(self, glucose: float, bmi: float) -> ScoreResult:
        return self.score([glucose, bmi])

    def plaintext_reference(self, features: Sequence[float]) -> Dict[str, float]:
        """Same model in the clear, for accuracy comparison"""
        model = self.config.model
        linear = model.bias + float(np.dot(model.weights, features))
        return {
            'linear_score': linear,
            'risk_score': ApproxActivation(None, self.config.activation).evaluate_plain(linear)
        }

    def get_info(self) -> Dict[str, Any]:
        metadata = self.keys.get_metadata()
        return {
            'model': self.config.to_dict()['model'],
            'circuit_depth': RiskConfig.CIRCUIT_DEPTH,
            'keys': metadata.to_dict() if metadata else None,
            'inference_count': self.inference_count
        }

    # ==================== LIFECYCLE ====================

    def close(self):
        self._components = None
        self.keys.close()

    def __enter__(self) -> 'DiabetesRiskPredictor':
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
