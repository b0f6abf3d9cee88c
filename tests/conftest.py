import pytest

from p2p_call.config import Config
from p2p_call.core.store import InMemorySignalingStore


@pytest.fixture
def store():
    """Fresh in-process signaling store shared by both parties of a test."""
    return InMemorySignalingStore()


@pytest.fixture
def config(tmp_path):
    return Config(config_path=tmp_path / "config.json")


@pytest.fixture(scope="session")
def qapp():
    from PySide6.QtCore import QCoreApplication

    app = QCoreApplication.instance() or QCoreApplication([])
    yield app
