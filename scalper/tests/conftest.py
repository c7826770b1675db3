import pytest

from scalper.core.config import TradingConfig
from scalper.persistence.db import DB
from scalper.persistence.state_store import StateStore


@pytest.fixture(autouse=True)
def _test_env(monkeypatch):
    """
    Ensure tests never reach live execution or external services by accident.
    """
    monkeypatch.setenv("EXECUTION_MODE", "paper")
    monkeypatch.setenv("NEWS_ENABLED", "false")
    monkeypatch.setenv("GROQ_API_KEY", "")
    monkeypatch.setenv("SOLANA_RPC_URL", "")
    monkeypatch.setenv("PRIVATE_KEY", "")


class FakeClock:
    """Manually advanced wall clock (seconds)."""

    def __init__(self, t: float = 1_700_000_000.0):
        self.t = float(t)

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cfg():
    return TradingConfig()


@pytest.fixture
def db(tmp_path):
    return DB(str(tmp_path / "scalper.db"))


@pytest.fixture
def store(db):
    return StateStore(db)
