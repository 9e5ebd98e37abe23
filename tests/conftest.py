"""
Split Inference Test Configuration
==================================

[QA] Central pytest configuration with fixtures for all test types:
- Unit tests: Isolated, no I/O, fast
- E2E tests: Full node stack over localhost TCP

[FIXTURES]
- model_config: Small model (8 layers, hidden_dim=16)
- loopback_pair: Linked in-memory peer channels
- coordinator_pair: Two coordinators wired through loopback_pair
- mock_engine: Deterministic inference engine
- crypto / crypto_pair: Fresh Ed25519 identities

Usage:
    pytest tests/unit/          # Fast unit tests
    pytest tests/e2e/           # End-to-end tests
"""

import sys
import asyncio
import tempfile
import shutil
import logging
from pathlib import Path
from typing import Generator, Callable, Tuple

import numpy as np
import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "e2e: End-to-end tests (full stack)")
    config.addinivalue_line("markers", "slow: Slow tests (skip with -m 'not slow')")


def pytest_collection_modifyitems(config, items):
    """Auto-mark tests based on their path."""
    for item in items:
        if "/unit/" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "/e2e/" in str(item.fspath):
            item.add_marker(pytest.mark.e2e)


# ============================================================================
# Logging Configuration
# ============================================================================

@pytest.fixture(scope="session", autouse=True)
def configure_logging():
    """Configure logging for tests."""
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logging.getLogger("asyncio").setLevel(logging.WARNING)


# ============================================================================
# Temporary Directory Fixtures
# ============================================================================

@pytest.fixture(scope="function")
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    temp_path = Path(tempfile.mkdtemp(prefix="splitinfer_test_"))
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


# ============================================================================
# Crypto Fixtures
# ============================================================================

@pytest.fixture(scope="function")
def crypto():
    """Create fresh Crypto identity for each test."""
    from core.transport import Crypto
    return Crypto()


@pytest.fixture(scope="function")
def crypto_pair():
    """Create a pair of Crypto identities for sender/receiver tests."""
    from core.transport import Crypto
    return Crypto(), Crypto()


# ============================================================================
# Model / Coordinator Fixtures
# ============================================================================

@pytest.fixture(scope="function")
def model_config():
    """Small model so activations stay tiny."""
    from config import ModelConfig
    return ModelConfig(total_layers=8, hidden_dim=16, split_layer=3)


@pytest.fixture(scope="function")
def mock_engine():
    """Deterministic engine: token id = argmax of the last hidden vector."""
    from cortex.distributed.engine import MockInferenceEngine
    return MockInferenceEngine(vocab_size=32000)


@pytest.fixture(scope="function")
def loopback_pair():
    """Linked in-memory channels (node-a <-> node-b)."""
    from core.peer import LoopbackChannel
    return LoopbackChannel.pair("node-a", "node-b")


@pytest.fixture(scope="function")
def coordinator_pair(loopback_pair, model_config, mock_engine):
    """
    Two coordinators connected through loopback channels.

    The first has no engine; the second runs mock_engine.
    Deliver queued messages with LoopbackChannel.pump(a, b).
    """
    from cortex.distributed.coordinator import Coordinator

    a, b = loopback_pair
    first = Coordinator(peer=a, model_config=model_config, node_id="node-a")
    second = Coordinator(peer=b, engine=mock_engine, model_config=model_config, node_id="node-b")
    a.on_message = first.handle_message
    b.on_message = second.handle_message
    return first, second


@pytest.fixture(scope="function")
def hidden_state() -> Callable[..., np.ndarray]:
    """Factory for float16 activations with a chosen argmax position."""
    def _create(seq_len: int = 2, hidden_dim: int = 16, hot: int = 0) -> np.ndarray:
        data = np.zeros((1, seq_len, hidden_dim), dtype=np.float16)
        data[0, -1, hot] = 1.0
        return data
    return _create


# ============================================================================
# Async Utilities
# ============================================================================

@pytest.fixture(scope="function")
def async_timeout():
    """Helper for async test timeouts."""
    async def _timeout(coro, seconds: float = 5.0):
        return await asyncio.wait_for(coro, timeout=seconds)
    return _timeout
