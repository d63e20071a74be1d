"""
Shared fixtures. Key generation is the slow part, so keyed sessions are
module-scoped; every primitive returns new values, so tests cannot
interfere through them.
"""

import sys
from pathlib import Path

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from fhe_risk.key_management import KeyManager
from fhe_risk.risk_predictor import DiabetesRiskPredictor
from fhe_risk.security_logger import SecurityLogger


@pytest.fixture(scope="module")
def key_manager():
    """Depth-2 session: levels 2, 1, 0"""
    manager = KeyManager()
    manager.generate_parameters(2)
    manager.generate_keys()
    yield manager
    manager.close()


@pytest.fixture
def engine(key_manager):
    return key_manager.public_engine()


@pytest.fixture
def private_engine(key_manager):
    return key_manager.private_engine()


@pytest.fixture(scope="module")
def audit():
    return SecurityLogger()


@pytest.fixture(scope="module")
def predictor(audit):
    with DiabetesRiskPredictor(audit=audit) as p:
        yield p
