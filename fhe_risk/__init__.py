"""
FHE Risk - Encrypted Diabetes Risk Scoring
Powered by TenSEAL (Microsoft SEAL) with the CKKS scheme
"""

from .exceptions import (
    HomomorphicError,
    ParameterError,
    LevelExhausted,
    ScaleMismatchError,
    DimensionError,
    NotInitialized,
    DecryptionFailure,
)
from .config import RiskConfig, EncryptionConfig, ModelConfig, ActivationConfig, DecoderConfig
from .fhe_engine import CKKSEngine, PrivateCKKSEngine, HESession, EncryptedValue, PlainValue
from .key_management import KeyManager, EncryptionParameters, KeySet, KeyMetadata
from .feature_encoder import FeatureEncoder, EncodedVector
from .secure_linear import SecureLinearEvaluator, rotation_steps
from .activation import ApproxActivation, RiskAssessment
from .result_decoder import ResultDecoder
from .risk_predictor import DiabetesRiskPredictor, InferenceRequest, ScoreResult, Stage
from .security_logger import SecurityLogger, DataType, OperationType

__all__ = [
    # Errors
    'HomomorphicError', 'ParameterError', 'LevelExhausted', 'ScaleMismatchError',
    'DimensionError', 'NotInitialized', 'DecryptionFailure',
    # Configuration
    'RiskConfig', 'EncryptionConfig', 'ModelConfig', 'ActivationConfig', 'DecoderConfig',
    # Primitives and keys
    'CKKSEngine', 'PrivateCKKSEngine', 'HESession', 'EncryptedValue', 'PlainValue',
    'KeyManager', 'EncryptionParameters', 'KeySet', 'KeyMetadata',
    # Pipeline
    'FeatureEncoder', 'EncodedVector', 'SecureLinearEvaluator', 'rotation_steps',
    'ApproxActivation', 'RiskAssessment', 'ResultDecoder',
    'DiabetesRiskPredictor', 'InferenceRequest', 'ScoreResult', 'Stage',
    # Audit
    'SecurityLogger', 'DataType', 'OperationType',
]
__version__ = '1.0.0'
