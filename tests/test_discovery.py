"""
Tests for mDNS discovery: record extraction and the watch lifecycle.
"""

import socket

import pytest
from zeroconf import DNSAddress, DNSService, DNSText, ServiceStateChange

from couch_link import discovery
from couch_link.discovery import DiscoveredDevice, EventKind, extract_device
from couch_link.errors import InvalidServiceParams, ShuttingDown
from couch_link.presence import encode_txt

from .conftest import wait_for

SERVICE_TYPE = "_couchlink._tcp.local."
INSTANCE = f"Phone.{SERVICE_TYPE}"

# DNS record types and class
TYPE_A = 1
TYPE_TXT = 16
TYPE_AAAA = 28
TYPE_SRV = 33
CLASS_IN = 1


def srv(name=INSTANCE, server="phone.local.", port=9001):
    return DNSService(name, TYPE_SRV, CLASS_IN, 120, 0, 0, port, server)


def txt(*records, name=INSTANCE):
    return DNSText(name, TYPE_TXT, CLASS_IN, 4500, encode_txt(records))


def a_record(address, name="phone.local."):
    return DNSAddress(name, TYPE_A, CLASS_IN, 120, socket.inet_aton(address))


def aaaa_record(address, name="phone.local."):
    return DNSAddress(name, TYPE_AAAA, CLASS_IN, 120, socket.inet_pton(socket.AF_INET6, address))


class FakeServiceInfo:
    """Stands in for AsyncServiceInfo so lookups never hit the network."""

    def __init__(self, service_type, name):
        self.name = name

    async def async_request(self, zc, timeout):
        return True


class TestExtractDevice:

    def test_full_response(self):
        device = extract_device([srv(), txt("role=phone", "v=2"), a_record("192.168.1.30")])

        assert device == DiscoveredDevice(
            name="Phone._couchlink._tcp.local",
            hostname="phone.local",
            address="192.168.1.30",
            port=9001,
            txt=["role=phone", "v=2"],
        )

    def test_first_address_wins(self):
        device = extract_device([
            srv(),
            aaaa_record("fe80::1"),
            a_record("192.168.1.30"),
        ])
        assert device.address == "fe80::1"

    def test_txt_collected_across_records_in_order(self):
        device = extract_device([txt("a=1"), srv(), txt("b=2", "a=1")])
        assert device.txt == ["a=1", "b=2", "a=1"]

    def test_missing_srv(self):
        device = extract_device([a_record("10.0.0.5")], fallback_name=INSTANCE)

        assert device.hostname == ""
        assert device.port == 0
        assert device.name == "Phone._couchlink._tcp.local"
        assert device.address == "10.0.0.5"

    def test_to_dict_uses_addr(self):
        device = extract_device([srv(), a_record("192.168.1.30")])
        data = device.to_dict()

        assert data["addr"] == "192.168.1.30"
        assert "address" not in data
        assert device.key == "phone.local:9001"


class TestDiscoveryWatcher:

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, app, network, browsers):
        events = []
        assert await app.discovery.start(SERVICE_TYPE, events.append) is True
        assert await app.discovery.start(SERVICE_TYPE, events.append) is False

        assert len(browsers.browsers) == 1
        assert len(network.instances) == 1
        assert app.discovery.is_running
        await app.discovery.stop()

    @pytest.mark.asyncio
    async def test_stop_when_not_running(self, app):
        assert await app.discovery.stop() is False

    @pytest.mark.asyncio
    async def test_stop_tears_down(self, app, network, browsers):
        await app.discovery.start(SERVICE_TYPE, lambda event: None)

        assert await app.discovery.stop() is True

        assert browsers.browsers[0].cancelled
        assert network.instances[0].closed
        assert not app.discovery.is_running

    @pytest.mark.asyncio
    async def test_bad_service_type(self, app, network):
        with pytest.raises(InvalidServiceParams):
            await app.discovery.start("bogus", lambda event: None)
        assert network.instances == []

    @pytest.mark.asyncio
    async def test_refused_while_closing(self, app):
        app.state.closing.set()
        with pytest.raises(ShuttingDown):
            await app.discovery.start(SERVICE_TYPE, lambda event: None)

    @pytest.mark.asyncio
    async def test_found_and_lost_events(self, app, network, browsers, monkeypatch):
        monkeypatch.setattr(discovery, "AsyncServiceInfo", FakeServiceInfo)
        for record in (srv(), txt("role=phone"), a_record("192.168.1.30")):
            network.cache.add(record)

        events = []
        await app.discovery.start(SERVICE_TYPE, events.append)
        browser = browsers.browsers[0]

        browser.fire(INSTANCE, ServiceStateChange.Added)
        await wait_for(lambda: len(events) == 1)
        browser.fire(INSTANCE, ServiceStateChange.Updated)
        await wait_for(lambda: len(events) == 2)
        browser.fire(INSTANCE, ServiceStateChange.Removed)

        assert [event.kind for event in events] == [EventKind.FOUND, EventKind.UPDATED, EventKind.LOST]
        found = events[0].to_dict()
        assert found["event"] == "mdns:found"
        assert found["device"] == {
            "name": "Phone._couchlink._tcp.local",
            "hostname": "phone.local",
            "addr": "192.168.1.30",
            "port": 9001,
            "txt": ["role=phone"],
        }
        assert events[2].to_dict()["event"] == "mdns:lost"
        await app.discovery.stop()

    @pytest.mark.asyncio
    async def test_events_after_stop_are_dropped(self, app, browsers):
        events = []
        await app.discovery.start(SERVICE_TYPE, events.append)
        browser = browsers.browsers[0]
        await app.discovery.stop()

        browser.fire(INSTANCE, ServiceStateChange.Removed)
        assert events == []

    @pytest.mark.asyncio
    async def test_sink_errors_are_contained(self, app, browsers):
        def broken_sink(event):
            raise ValueError("ui went away")

        await app.discovery.start(SERVICE_TYPE, broken_sink)
        browsers.browsers[0].fire(INSTANCE, ServiceStateChange.Removed)
        assert app.discovery.is_running
        await app.discovery.stop()
