import io
import threading

import pytest

import Net_Perf
from .utils import get_free_port


@pytest.fixture
def stop():
    """Run-scoped stop signal; set on teardown so every worker winds down."""
    event = threading.Event()
    yield event
    event.set()


@pytest.fixture
def counters():
    return Net_Perf.BandwidthCounters()


@pytest.fixture
def console():
    """Console writing into buffers instead of the real terminal."""
    return Net_Perf.Console(out=io.StringIO(), err=io.StringIO())


@pytest.fixture
def receiver(counters, console, stop):
    """Receive engine on a free loopback port."""
    engine = Net_Perf.ReceiveEngine(counters, console, stop, get_free_port(), bind='127.0.0.1')
    engine.start()
    yield engine
    engine.close()


@pytest.fixture
def beacon():
    b = Net_Perf.Beacon(Net_Perf.new_run_token(), get_free_port(), bind='127.0.0.1')
    b.start()
    yield b
    b.close()


@pytest.fixture
def run_config():
    """
    Factory for a short Config on free ports.
    Usage: run_config(["127.0.0.1"], duration=1.5)
    """
    def _make(targets, **overrides):
        params = dict(
            duration=1.5,
            port=get_free_port(),
            beacon_port=get_free_port(),
            bind='127.0.0.1',
            connections=2,
        )
        params.update(overrides)
        return Net_Perf.Config(targets=tuple(targets), **params)

    return _make
