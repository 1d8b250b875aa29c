"""
Shared fixtures: in-memory stand-ins for zeroconf, the service browser and
the input backend, so tests never touch the network or the X server.
"""

import asyncio
from pathlib import Path

import pytest

from couch_link.app import AppContext
from couch_link.config import Config


class FakeCache:
    def __init__(self):
        self.entries = {}

    def add(self, record):
        self.entries.setdefault(record.name.lower(), []).append(record)

    def async_entries_with_name(self, name):
        return list(self.entries.get(name.lower(), []))


class FakeInnerZeroconf:
    """What AsyncZeroconf.zeroconf exposes to browsers and lookups."""

    def __init__(self, cache):
        self.cache = cache


def _done_future():
    future = asyncio.get_running_loop().create_future()
    future.set_result(None)
    return future


class FakeAsyncZeroconf:
    def __init__(self, network, index):
        self.network = network
        self.index = index
        self.zeroconf = FakeInnerZeroconf(network.cache)
        self.closed = False

    async def async_register_service(self, info, cooperating_responders=False):
        if self.network.fail_register:
            raise RuntimeError("register refused")
        if self.network.on_register is not None:
            self.network.on_register()
        self.network.log.append(("register", self.index, info.name, cooperating_responders))
        self.network.registered.append(info)
        return _done_future()

    async def async_unregister_service(self, info):
        if self.network.fail_unregister:
            raise RuntimeError("unregister refused")
        self.network.log.append(("unregister", self.index, info.name))
        return _done_future()

    async def async_close(self):
        self.closed = True
        self.network.log.append(("close", self.index))


class FakeNetwork:
    """Factory for FakeAsyncZeroconf instances that records what they do."""

    def __init__(self):
        self.cache = FakeCache()
        self.instances = []
        self.log = []
        self.registered = []
        self.fail_register = False
        self.fail_unregister = False
        # Called on every registration, before it completes
        self.on_register = None

    def __call__(self):
        zc = FakeAsyncZeroconf(self, len(self.instances))
        self.instances.append(zc)
        return zc

    def count(self, action):
        return sum(1 for entry in self.log if entry[0] == action)


class FakeBrowser:
    def __init__(self, zeroconf, service_type, handlers):
        self.zeroconf = zeroconf
        self.service_type = service_type
        self.handlers = handlers
        self.cancelled = False

    async def async_cancel(self):
        self.cancelled = True

    def fire(self, name, state_change):
        for handler in self.handlers:
            handler(zeroconf=self.zeroconf, service_type=self.service_type, name=name, state_change=state_change)


class BrowserFactory:
    def __init__(self):
        self.browsers = []

    def __call__(self, zeroconf, service_type, handlers):
        browser = FakeBrowser(zeroconf, service_type, handlers)
        self.browsers.append(browser)
        return browser


class RecordingActuator:
    """Input backend that remembers every call instead of running xdotool."""

    def __init__(self):
        self.calls = []

    def key_press(self, key):
        self.calls.append(("key", key))
        return True

    def click(self, button):
        self.calls.append(("click", button))
        return True

    def move_relative(self, dx, dy):
        self.calls.append(("move", dx, dy))
        return True

    def scroll(self, amount):
        self.calls.append(("scroll", amount))
        return True


async def wait_for(predicate, timeout=2.0):
    """Poll until predicate() is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def network():
    return FakeNetwork()


@pytest.fixture
def browsers():
    return BrowserFactory()


@pytest.fixture
def actuator():
    return RecordingActuator()


@pytest.fixture
def addresses():
    return ["192.168.1.20"]


@pytest.fixture
def config(tmp_path: Path):
    """Defaults only, with every delay shrunk to zero."""
    cfg = Config(tmp_path / "missing.yaml")
    cfg.set("command_server", "host", "127.0.0.1")
    for key in ("settle", "spacing", "repeat_settle", "final_delay"):
        cfg.set("goodbye", key, 0)
    cfg.set("lifecycle", "propagation_delay", 0)
    return cfg


@pytest.fixture
def app(config, actuator, network, browsers, addresses):
    return AppContext(
        config,
        actuator=actuator,
        zeroconf_factory=network,
        browser_factory=browsers,
        address_provider=lambda: list(addresses),
    )
