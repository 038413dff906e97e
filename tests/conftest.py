import pytest


class FakeClock:
    """Manually advanced monotonic clock (seconds)."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


class SeqLoader:
    """Async loader returning the given payloads in order, counting calls."""

    def __init__(self, *payloads):
        self.payloads = list(payloads)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        item = self.payloads[min(self.calls, len(self.payloads)) - 1]
        if isinstance(item, BaseException):
            raise item
        return item


@pytest.fixture
def seq_loader():
    return SeqLoader
