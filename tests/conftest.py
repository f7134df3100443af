"""Shared fixtures: in-memory stand-ins for watchdog observers and the live stream."""

import asyncio

import pytest


class FakeObserver:
    """Records schedule/start/stop calls instead of watching the filesystem."""

    def __init__(self, fail_on_schedule: bool = False):
        self.fail_on_schedule = fail_on_schedule
        self.scheduled = []
        self.started = False
        self.stop_calls = 0

    def schedule(self, handler, path, recursive=False):
        if self.fail_on_schedule:
            raise OSError("inotify watch limit reached")
        self.scheduled.append((handler, path, recursive))

    def start(self):
        self.started = True

    def stop(self):
        self.stop_calls += 1

    def is_alive(self):
        return False

    def join(self, timeout=None):
        pass


def make_observer_factory(fail_from: int | None = None):
    """Factory whose ``n``-th observer (0-based) and later ones fail to schedule."""
    created: list[FakeObserver] = []

    def factory():
        fail = fail_from is not None and len(created) >= fail_from
        observer = FakeObserver(fail_on_schedule=fail)
        created.append(observer)
        return observer

    factory.created = created
    return factory


@pytest.fixture
def observer_factory():
    return make_observer_factory()


@pytest.fixture
def failing_observer_factory():
    return make_observer_factory(fail_from=0)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def second_observer_fails_factory():
    return make_observer_factory(fail_from=1)


class FakeStream:
    """Queue-backed live event stream. ``None`` in the queue ends the stream."""

    def __init__(self, open_error: BaseException | None = None, open_delay: float = 0):
        self.open_error = open_error
        self.open_delay = open_delay
        self.queue: asyncio.Queue = asyncio.Queue()
        self.open_calls = 0
        self.close_calls = 0

    async def open(self):
        self.open_calls += 1
        if self.open_delay:
            await asyncio.sleep(self.open_delay)
        if self.open_error is not None:
            raise self.open_error

    async def events(self):
        while True:
            item = await self.queue.get()
            if item is None:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    async def close(self):
        self.close_calls += 1


@pytest.fixture
def stream_factory():
    return FakeStream
