import pytest

from ignitor.builder import build_module
from ignitor.chain import SimulatedChainClient
from ignitor.config import IgnitorConfig
from ignitor.executor import RetryPolicy
from ignitor.journal import InMemoryJournal

SENDER = "0xdeployer"
NETWORK = "local"


@pytest.fixture(autouse=True)
def isolated_home(monkeypatch, tmp_path):
    """Keep every test away from the real ~/.config/ignitor."""
    home = tmp_path / "ignitor_home"
    monkeypatch.setenv("IGNITOR_HOME", str(home))
    return home


@pytest.fixture
def test_config(tmp_path):
    return IgnitorConfig(
        journal_backend="file",
        journal_path=str(tmp_path / "journal"),
        definitions_dir=str(tmp_path / "modules"),
        chain_client="simulated",
        default_sender=SENDER,
        max_workers=2,
        backoff_initial_s=0.0,
        poll_interval_s=0.0,
    )


@pytest.fixture
def journal():
    return InMemoryJournal()


@pytest.fixture
def client():
    return SimulatedChainClient()


@pytest.fixture
def policy():
    """Fast policy; delays are recorded by FakeClock, never slept."""
    return RetryPolicy(
        submit_attempts=3,
        poll_attempts=3,
        backoff_initial_s=0.5,
        backoff_multiplier=2.0,
        backoff_max_s=30.0,
        poll_interval_s=1.0,
        poll_timeout_s=3.0,
    )


class FakeClock:
    """Monotonic clock advanced only by sleep()."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


def locker_module(pyth: str = "0xPyth", pool: str = "0xPool"):
    """Deploy NFT, deploy locker(NFT), call NFT.setMinter(locker)."""

    def define(m):
        nft = m.contract("ETHLockerNFT")
        locker = m.contract("ETHLocker", [pyth, nft, pool])
        m.call(nft, "setMinter", [locker])
        return {"ethLocker": locker, "nft": nft}

    graph, _ = build_module("ETHLockerModule", define, default_sender=SENDER)
    return graph


def vault_module(token_supply: int = 1000):
    """
    Token, Vault(Token), Other (independent), Vault.init(Token).

    Declaration order puts Other between Vault and Vault.init.
    """

    def define(m):
        token = m.contract("Token", [token_supply])
        vault = m.contract("Vault", [token])
        m.contract("Other")
        m.call(vault, "init", [token])
        return {"vault": vault}

    graph, _ = build_module("VaultModule", define, default_sender=SENDER)
    return graph


@pytest.fixture
def locker_graph():
    return locker_module()


@pytest.fixture
def vault_graph():
    return vault_module()
