import pytest

from kvledger.crypto.keys import AvatarKeyPair


class FakeClock:
    """Unix-seconds clock that only moves when a test says so."""

    def __init__(self, now: int = 1_700_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def keys() -> AvatarKeyPair:
    return AvatarKeyPair.generate()


@pytest.fixture
def other_keys() -> AvatarKeyPair:
    return AvatarKeyPair.generate()
