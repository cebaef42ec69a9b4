"""
用户设置与事件分发测试。
"""

import pytest

from src.server.client.schemas import AppSettings, RpcHealth
from src.server.client.services import EventHub, SettingsStore


def test_settings_defaults_when_missing_or_corrupt(tmp_path):
    store = SettingsStore(tmp_path / "settings.json")
    assert store.load() == AppSettings()
    store.path.write_text("{not json", encoding="utf-8")
    assert store.load() == AppSettings()


def test_settings_reads_front_end_keys(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text('{"blockIncomingConnections": true, "onlynet": "ipv4", "theme": "dark"}', encoding="utf-8")
    settings = SettingsStore(path).load()
    assert settings.block_incoming_connections is True
    assert settings.onlynet == "ipv4"


def test_skip_core_update_round_trip_keeps_other_keys(tmp_path):
    store = SettingsStore(tmp_path / "nested" / "settings.json")
    store.save(AppSettings(proxy="127.0.0.1:9050"))
    store.set_skip_core_update("ab" * 32)
    loaded = store.load()
    assert loaded.skip_core_update == "ab" * 32
    assert loaded.proxy == "127.0.0.1:9050"
    assert '"skipCoreUpdate"' in store.path.read_text(encoding="utf-8")


@pytest.mark.asyncio
async def test_event_hub_fan_out():
    hub = EventHub()
    a, b = hub.subscribe(), hub.subscribe()
    hub.publish("RPC", RpcHealth(ready=True))
    assert a.get_nowait().data == {"ready": True, "message": ""}
    assert b.get_nowait().channel == "RPC"

    hub.unsubscribe(a)
    hub.publish("CHECKUPDATE", False)
    assert a.empty()
    assert b.get_nowait().data is False


def test_unknown_front_end_keys_survive_save(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text('{"theme": "dark"}', encoding="utf-8")
    store = SettingsStore(path)
    store.set_skip_core_update("cd" * 32)
    assert '"theme": "dark"' in path.read_text(encoding="utf-8")


@pytest.mark.asyncio
async def test_slow_subscriber_keeps_latest_events():
    hub = EventHub(maxsize=2)
    slow = hub.subscribe()
    for n in range(5):
        hub.publish("CHECKUPDATE", n)

    assert slow.qsize() == 2
    assert [slow.get_nowait().data for _ in range(2)] == [3, 4]
