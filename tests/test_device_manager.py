from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Dict, Optional

import pytest

from pethub import device_manager
from pethub.connection import ConnectionStatus, backoff_delay
from pethub.device_manager import DeviceConfig, DeviceManager
from pethub.errors import (
    CommandFailedError,
    ConnectionTimeoutError,
    CorruptedPayloadError,
    DeviceNotFoundError,
    NotConnectableError,
    StatusTimeoutError,
    ValidationError,
)
from pethub.meal_plan import MealPlanEntry


class FakeTransport:
    """Stands in for the tinytuya session of one appliance."""

    def __init__(self, fail_connects: int = 0, tracker: Optional[Dict[str, int]] = None) -> None:
        self.fail_connects = fail_connects
        self.fail_all = False
        self.fail_heartbeat = False
        self.connect_calls = 0
        self.closed = 0
        self.writes: list = []
        self.write_delay = 0.0
        self.status_delay = 0.0
        self.status_payload: Any = {"dps": {"1": True}}
        self.active = 0
        self.max_active = 0
        self.tracker = tracker if tracker is not None else {"active": 0, "max": 0}
        self._incoming: Optional[asyncio.Queue] = None

    @property
    def incoming(self) -> asyncio.Queue:
        if self._incoming is None:
            self._incoming = asyncio.Queue()
        return self._incoming

    async def connect(self) -> Dict[str, Any]:
        self.connect_calls += 1
        if self.fail_all or self.connect_calls <= self.fail_connects:
            raise NotConnectableError("connection refused")
        return {"dps": {}}

    async def close(self) -> None:
        self.closed += 1

    async def get_status(self) -> Any:
        await asyncio.sleep(self.status_delay)
        return self.status_payload

    async def heartbeat(self) -> None:
        if self.fail_heartbeat:
            raise NotConnectableError("heartbeat not answered")

    async def set_value(self, index, value) -> Dict[str, Any]:
        self.active += 1
        self.tracker["active"] += 1
        self.max_active = max(self.max_active, self.active)
        self.tracker["max"] = max(self.tracker["max"], self.tracker["active"])
        try:
            await asyncio.sleep(self.write_delay)
            self.writes.append((index, value))
        finally:
            self.active -= 1
            self.tracker["active"] -= 1
        return {"dps": {str(index): value}}

    async def receive(self) -> Any:
        item = await self.incoming.get()
        if isinstance(item, BaseException):
            raise item
        return item


FEEDER = DeviceConfig(id="feeder1", name="Kitchen feeder", key="k1", ip="10.0.0.2", category="cwwsq")
FOUNTAIN = DeviceConfig(id="fountain1", name="Fountain", key="k2", ip="10.0.0.3", category="cwysj")


def _manager(tmp_path, transports: Dict[str, FakeTransport], **overrides) -> DeviceManager:
    options = dict(
        config_path=tmp_path / "devices.json",
        meal_plan_path=tmp_path / "meal-plans.json",
        transport_factory=lambda config: transports[config.id],
        connect_timeout=1.0,
        heartbeat_interval=60.0,
        reconnect_initial_delay=0.01,
        reconnect_max_delay=0.05,
        reconnect_jitter=0.0,
        status_timeout=1.0,
        retry_delay=0.0,
    )
    options.update(overrides)
    return DeviceManager([FEEDER, FOUNTAIN], **options)


async def _settle() -> None:
    await asyncio.sleep(0.01)


def test_backoff_delay_is_capped() -> None:
    assert backoff_delay(0, 2, 60, 1, rand=lambda: 0.0) == 2
    assert backoff_delay(3, 2, 60, 1, rand=lambda: 0.0) == 16
    assert backoff_delay(10, 2, 60, 1, rand=lambda: 0.999) < 61
    assert backoff_delay(10_000, 2, 60, 0) == 60


def test_send_command_connects_after_two_failures(tmp_path) -> None:
    transports = {"feeder1": FakeTransport(fail_connects=2), "fountain1": FakeTransport()}
    manager = _manager(tmp_path, transports)

    async def scenario() -> None:
        await manager.startup()
        try:
            await manager.send_command("feeder1", "3", 1)
            conn = manager.devices["feeder1"]
            assert conn.status is ConnectionStatus.CONNECTED
            assert conn.reconnect_attempts == 0
        finally:
            await manager.shutdown()

    asyncio.run(scenario())
    assert transports["feeder1"].connect_calls == 3
    assert transports["feeder1"].writes == [("3", 1)]


def test_send_command_reports_last_cause(tmp_path) -> None:
    transports = {"feeder1": FakeTransport(fail_connects=100), "fountain1": FakeTransport()}
    manager = _manager(
        tmp_path, transports, connect_attempts=1, command_attempts=2, reconnect_initial_delay=10.0
    )

    async def scenario() -> None:
        await manager.startup()
        try:
            with pytest.raises(CommandFailedError) as excinfo:
                await manager.send_command("feeder1", "3", 1)
            assert excinfo.value.device_id == "feeder1"
            assert isinstance(excinfo.value.cause, NotConnectableError)
            assert manager.devices["feeder1"].status is ConnectionStatus.DISCONNECTED
        finally:
            await manager.shutdown()

    asyncio.run(scenario())
    assert transports["feeder1"].connect_calls == 2
    assert transports["feeder1"].writes == []


def test_unknown_device_is_not_found(tmp_path) -> None:
    manager = _manager(tmp_path, {"feeder1": FakeTransport(), "fountain1": FakeTransport()})

    async def scenario() -> None:
        await manager.startup()
        with pytest.raises(DeviceNotFoundError):
            await manager.send_command("nope", "1", True)
        with pytest.raises(DeviceNotFoundError):
            await manager.get_device_status("nope")
        with pytest.raises(DeviceNotFoundError):
            manager.get_meal_plan("nope")
        await manager.shutdown()

    asyncio.run(scenario())


def test_reconnect_backoff_grows_until_cap_then_stops(tmp_path, monkeypatch) -> None:
    delays = []

    def recording_backoff(*args, **kwargs):
        delay = backoff_delay(*args, **kwargs)
        delays.append(delay)
        return delay

    monkeypatch.setattr(device_manager, "backoff_delay", recording_backoff)
    transport = FakeTransport()
    manager = _manager(
        tmp_path,
        {"feeder1": transport, "fountain1": FakeTransport()},
        reconnect_initial_delay=0.001,
        reconnect_max_delay=0.008,
        reconnect_jitter=0.004,
        max_reconnect_attempts=6,
        jitter_source=lambda: 0.5,
    )

    async def scenario() -> None:
        await manager.startup()
        try:
            await manager.connect_device("feeder1")
            conn = manager.devices["feeder1"]
            transport.fail_all = True
            transport.incoming.put_nowait(NotConnectableError("socket closed"))
            for _ in range(200):
                await asyncio.sleep(0.01)
                idle = conn.reconnect_task is None or conn.reconnect_task.done()
                if len(delays) == 6 and idle:
                    break
            assert conn.status is ConnectionStatus.DISCONNECTED
            assert conn.reconnect_attempts == 6

            transport.fail_all = False
            await manager.send_command("feeder1", "3", 2)
            assert conn.status is ConnectionStatus.CONNECTED
            assert conn.reconnect_attempts == 0
        finally:
            await manager.shutdown()

    asyncio.run(scenario())
    assert len(delays) == 6
    assert delays == sorted(delays)
    assert max(delays) <= 0.008 + 0.004
    assert delays[-1] == delays[-2]


def test_corrupted_push_never_updates_cached_state(tmp_path) -> None:
    transport = FakeTransport()
    manager = _manager(tmp_path, {"feeder1": transport, "fountain1": FakeTransport()})

    async def scenario() -> None:
        await manager.startup()
        try:
            await manager.connect_device("feeder1")
            conn = manager.devices["feeder1"]
            transport.incoming.put_nowait({"dps": {"101": 2}})
            await _settle()
            assert conn.last_data == {"101": 2}
            assert conn.parsed_status["feeding"]["last_feed_size"] == "2 portions"

            transport.incoming.put_nowait({"dps": {"101": "\x02\x11garbage"}})
            await _settle()
            assert conn.last_data == {"101": 2}
            assert conn.parsed_status["feeding"]["last_feed_size"] == "2 portions"
            assert conn.status is ConnectionStatus.CONNECTED
        finally:
            await manager.shutdown()

    asyncio.run(scenario())


def test_corrupted_status_counts_as_failed_attempt(tmp_path) -> None:
    transport = FakeTransport()
    transport.status_payload = {"dps": {"1": "\x01\x02"}}
    manager = _manager(tmp_path, {"feeder1": transport, "fountain1": FakeTransport()})

    async def scenario() -> None:
        await manager.startup()
        try:
            with pytest.raises(StatusTimeoutError) as excinfo:
                await manager.get_device_status("feeder1")
            assert isinstance(excinfo.value.cause, CorruptedPayloadError)
            assert manager.devices["feeder1"].last_data == {}
        finally:
            await manager.shutdown()

    asyncio.run(scenario())


def test_status_returns_fields_and_merges_them(tmp_path) -> None:
    transport = FakeTransport()
    transport.status_payload = {"devId": "fountain1", "dps": {"1": True, "3": 65}}
    manager = _manager(tmp_path, {"feeder1": FakeTransport(), "fountain1": transport})

    async def scenario() -> None:
        await manager.startup()
        try:
            dps = await manager.get_device_status("fountain1")
            assert dps == {"1": True, "3": 65}
            snapshot = manager.get_device("fountain1")
            assert snapshot["parsed_status"]["water_time_formatted"] == "1h 5m"
            assert snapshot["kind"] == "fountain"
            assert "key" not in snapshot
        finally:
            await manager.shutdown()

    asyncio.run(scenario())


def test_status_attempts_are_time_boxed(tmp_path) -> None:
    transport = FakeTransport()
    transport.status_delay = 1.0
    manager = _manager(
        tmp_path,
        {"feeder1": transport, "fountain1": FakeTransport()},
        status_timeout=0.05,
        status_attempts=2,
    )

    async def scenario() -> None:
        await manager.startup()
        try:
            with pytest.raises(StatusTimeoutError) as excinfo:
                await manager.get_device_status("feeder1")
            assert isinstance(excinfo.value.cause, ConnectionTimeoutError)
            assert manager.devices["feeder1"].status is ConnectionStatus.DISCONNECTED
        finally:
            await manager.shutdown()

    asyncio.run(scenario())


def test_commands_to_one_device_are_serialized(tmp_path) -> None:
    transport = FakeTransport()
    transport.write_delay = 0.02
    manager = _manager(tmp_path, {"feeder1": transport, "fountain1": FakeTransport()})

    async def scenario() -> None:
        await manager.startup()
        try:
            await asyncio.gather(
                manager.send_command("feeder1", "3", 1),
                manager.send_command("feeder1", "3", 2),
            )
        finally:
            await manager.shutdown()

    asyncio.run(scenario())
    assert transport.max_active == 1
    assert transport.writes == [("3", 1), ("3", 2)]
    assert transport.connect_calls == 1


def test_commands_to_different_devices_run_in_parallel(tmp_path) -> None:
    tracker = {"active": 0, "max": 0}
    feeder = FakeTransport(tracker=tracker)
    fountain = FakeTransport(tracker=tracker)
    feeder.write_delay = fountain.write_delay = 0.05
    manager = _manager(tmp_path, {"feeder1": feeder, "fountain1": fountain})

    async def scenario() -> None:
        await manager.startup()
        try:
            await asyncio.gather(
                manager.send_command("feeder1", "3", 1),
                manager.send_command("fountain1", "1", False),
            )
        finally:
            await manager.shutdown()

    asyncio.run(scenario())
    assert tracker["max"] == 2


def test_disconnect_after_command(tmp_path) -> None:
    transport = FakeTransport()
    manager = _manager(tmp_path, {"feeder1": transport, "fountain1": FakeTransport()})

    async def scenario() -> None:
        await manager.startup()
        try:
            await manager.send_command("feeder1", "2", True, disconnect_after=True)
            assert manager.devices["feeder1"].status is ConnectionStatus.DISCONNECTED
        finally:
            await manager.shutdown()

    asyncio.run(scenario())
    assert transport.writes == [("2", True)]
    assert transport.closed >= 1


def test_meal_plan_push_is_cached_and_survives_restart(tmp_path) -> None:
    transport = FakeTransport()
    entries = [MealPlanEntry(days_of_week=["Monday", "Wednesday"], time="08:30", portion=2)]
    manager = _manager(tmp_path, {"feeder1": transport, "fountain1": FakeTransport()})

    async def scenario() -> None:
        await manager.startup()
        try:
            encoded = await manager.push_meal_plan("feeder1", entries)
            assert encoded == "BQgeAgE="
        finally:
            await manager.shutdown()

        restarted = _manager(tmp_path, {"feeder1": FakeTransport(), "fountain1": FakeTransport()})
        await restarted.startup()
        assert restarted.get_meal_plan("feeder1") == "BQgeAgE="
        assert restarted.get_decoded_meal_plan("feeder1") == entries
        restarted.clear_meal_plan("feeder1")
        assert restarted.get_meal_plan("feeder1") is None
        assert restarted.get_decoded_meal_plan("feeder1") is None
        await restarted.shutdown()

    asyncio.run(scenario())
    assert transport.writes == [("1", "BQgeAgE=")]
    assert json.loads((tmp_path / "meal-plans.json").read_text()) == {}


def test_meal_plan_push_rejects_invalid_entries(tmp_path) -> None:
    transport = FakeTransport()
    manager = _manager(tmp_path, {"feeder1": transport, "fountain1": FakeTransport()})

    async def scenario() -> None:
        await manager.startup()
        with pytest.raises(ValidationError):
            await manager.push_meal_plan(
                "feeder1",
                [{"days_of_week": ["Monday"], "time": "08:00", "portion": 11, "status": "Enabled"}],
            )
        await manager.shutdown()

    asyncio.run(scenario())
    assert transport.writes == []
    assert transport.connect_calls == 0


def test_pushed_meal_plan_field_updates_cache(tmp_path) -> None:
    transport = FakeTransport()
    manager = _manager(tmp_path, {"feeder1": transport, "fountain1": FakeTransport()})

    async def scenario() -> None:
        await manager.startup()
        try:
            await manager.connect_device("feeder1")
            transport.incoming.put_nowait({"dps": {"1": "BQgeAgE="}})
            await _settle()
            assert manager.get_meal_plan("feeder1") == "BQgeAgE="
        finally:
            await manager.shutdown()

    asyncio.run(scenario())
    assert json.loads((tmp_path / "meal-plans.json").read_text()) == {"feeder1": "BQgeAgE="}


def test_connect_all_and_stats(tmp_path) -> None:
    manager = _manager(
        tmp_path,
        {"feeder1": FakeTransport(), "fountain1": FakeTransport(fail_connects=100)},
        connect_attempts=1,
        reconnect_initial_delay=10.0,
    )

    async def scenario() -> None:
        await manager.startup()
        try:
            results = await manager.connect_all_devices()
            assert results == {"feeder1": True, "fountain1": False}
            stats = manager.get_connection_stats()
            assert stats["total"] == 2
            assert stats["connected"] == 1
            assert stats["disconnected"] == 1
            assert stats["devices"]["fountain1"]["reconnect_pending"] is True
            assert [d["id"] for d in manager.get_devices_by_kind("feeder")] == ["feeder1"]

            await manager.disconnect_all_devices()
            assert manager.get_connection_stats()["connected"] == 0
            assert manager.get_connection_stats()["devices"]["fountain1"]["reconnect_pending"] is False
        finally:
            await manager.shutdown()

    asyncio.run(scenario())


def test_configs_load_from_file(tmp_path) -> None:
    (tmp_path / "devices.json").write_text(
        json.dumps(
            [
                {"id": "abc", "name": "Litter", "key": "secret", "ip": "10.0.0.9", "category": "msp"},
                {"name": "missing id"},
            ]
        )
    )
    manager = DeviceManager(
        config_path=tmp_path / "devices.json",
        meal_plan_path=tmp_path / "meal-plans.json",
        transport_factory=lambda config: FakeTransport(),
    )

    async def scenario() -> None:
        await manager.startup()
        assert list(manager.devices) == ["abc"]
        assert manager.get_device("abc")["kind"] == "litter-box"
        await manager.shutdown()

    asyncio.run(scenario())


def test_failed_heartbeat_drops_session_and_reconnects(tmp_path) -> None:
    transport = FakeTransport()
    transport.fail_heartbeat = True
    manager = _manager(
        tmp_path,
        {"feeder1": transport, "fountain1": FakeTransport()},
        heartbeat_interval=0.02,
        reconnect_initial_delay=0.2,
        reconnect_max_delay=0.2,
    )

    async def scenario() -> None:
        await manager.startup()
        try:
            await manager.connect_device("feeder1")
            conn = manager.devices["feeder1"]
            for _ in range(100):
                await asyncio.sleep(0.01)
                if conn.status is ConnectionStatus.DISCONNECTED:
                    break
            assert conn.status is ConnectionStatus.DISCONNECTED
            assert conn.reconnect_task is not None and not conn.reconnect_task.done()
            assert transport.closed == 1

            transport.fail_heartbeat = False
            for _ in range(100):
                await asyncio.sleep(0.01)
                if conn.status is ConnectionStatus.CONNECTED:
                    break
            assert conn.status is ConnectionStatus.CONNECTED
            assert conn.reconnect_attempts == 0
        finally:
            await manager.shutdown()

    asyncio.run(scenario())
    assert transport.connect_calls == 2


def test_abandoned_connecting_state_is_reset(tmp_path) -> None:
    transport = FakeTransport()
    manager = _manager(tmp_path, {"feeder1": transport, "fountain1": FakeTransport()})

    async def scenario() -> None:
        await manager.startup()
        try:
            await manager.connect_device("feeder1")
            conn = manager.devices["feeder1"]
            conn.status = ConnectionStatus.CONNECTING
            conn.connecting_since = time.monotonic() - 30

            await manager.send_command("feeder1", "3", 1)
            assert conn.status is ConnectionStatus.CONNECTED
            assert conn.connecting_since is None
            assert transport.closed == 1
            assert transport.connect_calls == 2
        finally:
            await manager.shutdown()

    asyncio.run(scenario())
    assert transport.writes == [("3", 1)]
