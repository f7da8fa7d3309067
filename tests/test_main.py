from __future__ import annotations

import asyncio

from pethub import main


class StubManager:
    def __init__(self) -> None:
        self.stopped = False

    async def shutdown(self) -> None:
        self.stopped = True


def test_shutdown_waits_for_background_tasks(monkeypatch) -> None:
    devices, lamps = StubManager(), StubManager()
    monkeypatch.setattr(main, "devices", devices)
    monkeypatch.setattr(main, "lamps", lamps)
    monkeypatch.setattr(main, "_background", [])

    async def scenario() -> None:
        task = asyncio.create_task(asyncio.sleep(60))
        main._background.append(task)
        await main.shutdown_event()
        assert task.cancelled()
        assert main._background == []

    asyncio.run(scenario())
    assert devices.stopped
    assert lamps.stopped
