import pytest


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1000.0):
        self.start = start
        self.now = start

    def __call__(self) -> float:
        return self.now

    def at(self, offset: float) -> None:
        """Jump to start + offset seconds."""
        self.now = self.start + offset


@pytest.fixture
def clock():
    return FakeClock()
