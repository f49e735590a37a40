# secretlink/tests/conftest.py
import pytest

from secretlink.crypto import Signer
from secretlink.storage import InMemoryLinkLedger, SQLiteLinkLedger
from secretlink.tokens import TokenCodec

KEY = "k" * 32
T0 = 1_700_000_000.0


class Clock:
    """Manually advanced UNIX clock."""

    def __init__(self, t: float = T0):
        self.t = float(t)

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def signer():
    return Signer(KEY)


@pytest.fixture
def codec(signer, clock):
    return TokenCodec(signer, clock=clock)


@pytest.fixture(params=["memory", "sqlite"])
def make_ledger_for(request, tmp_path):
    """Factory: build a ledger of the parametrized backend."""

    def _make(**kwargs):
        if request.param == "memory":
            return InMemoryLinkLedger(**kwargs)
        return SQLiteLinkLedger(str(tmp_path / "links.db"), **kwargs)

    _make.backend = request.param
    return _make


@pytest.fixture
def ledger(make_ledger_for, clock):
    return make_ledger_for(clock=clock)
