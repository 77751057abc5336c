import sys
import torch
import pytest
from pathlib import Path

# Ensure project root is on sys.path for package imports during pytest runs.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from neo_attention.configuration_neo import NeoAttentionConfig


@pytest.fixture(scope="session", autouse=True)
def set_test_seeds():
    """Set seeds for reproducible tests across the session."""
    torch.manual_seed(42)
    torch.cuda.manual_seed_all(42)


@pytest.fixture
def device():
    """Get available device for testing."""
    return torch.device('cuda' if torch.cuda.is_available() else 'cpu')


@pytest.fixture
def tiny_config():
    """Create a tiny config for fast testing (layer 0 global, layer 1 local)."""
    return NeoAttentionConfig.from_preset("tiny")


@pytest.fixture
def sample_hidden_states(tiny_config, device):
    """Create sample hidden states for testing."""
    batch_size = 2
    seq_len = 10
    return {
        "hidden_states": torch.randn(batch_size, seq_len, tiny_config.hidden_size, device=device),
        "batch_size": batch_size,
        "seq_len": seq_len,
    }


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "gpu: marks tests that require GPU"
    )
