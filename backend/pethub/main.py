from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__, meal_plan
from .device_manager import DeviceManager
from .errors import (
    AuthorizationRequiredError,
    ConnectionTimeoutError,
    DeviceNotFoundError,
    MealPlanError,
    PetHubError,
    StatusTimeoutError,
)
from .lamp_manager import LampManager
from .meal_plan import MealPlanEntry

logger = logging.getLogger(__name__)

app = FastAPI(title="Pet Hub API", version=__version__)
devices = DeviceManager()
lamps = LampManager()
_background: List[asyncio.Task] = []

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Checked in order; the first matching class wins.
_ERROR_STATUS = (
    (DeviceNotFoundError, 404),
    (MealPlanError, 400),
    (AuthorizationRequiredError, 403),
    (ConnectionTimeoutError, 504),
    (StatusTimeoutError, 504),
    (PetHubError, 502),
)


@app.on_event("startup")
async def startup_event() -> None:
    await devices.startup()
    await lamps.initialize()
    # Connecting can take a while per device; serve requests meanwhile.
    _background.append(asyncio.create_task(devices.connect_all_devices()))


@app.on_event("shutdown")
async def shutdown_event() -> None:
    for task in _background:
        task.cancel()
    if _background:
        await asyncio.gather(*_background, return_exceptions=True)
    _background.clear()
    await lamps.shutdown()
    await devices.shutdown()


@app.exception_handler(PetHubError)
async def pethub_exception_handler(_, exc: PetHubError) -> JSONResponse:
    status_code = next(code for error, code in _ERROR_STATUS if isinstance(exc, error))
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.exception_handler(ValueError)
async def value_error_handler(_, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def generic_exception_handler(_, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error", exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": str(exc)})


class CommandRequest(BaseModel):
    field: str
    value: Any
    disconnect_after: bool = False


class MealPlanEntryModel(BaseModel):
    days_of_week: List[str]
    time: str
    portion: int
    status: str = meal_plan.STATUS_ENABLED


class MealPlanRequest(BaseModel):
    entries: List[MealPlanEntryModel] = Field(default_factory=list)


class EncodedMealPlanRequest(BaseModel):
    encoded: str


class PowerRequest(BaseModel):
    on: bool


class LevelRequest(BaseModel):
    percent: int = Field(ge=1, le=100)


class LampStateRequest(BaseModel):
    on: bool
    brightness: Optional[int] = Field(default=None, ge=1, le=100)


class RenameRequest(BaseModel):
    name: str


@app.get("/api/health")
async def health() -> Dict[str, object]:
    return {
        "status": "ok",
        "timestamp": datetime.utcnow().isoformat(),
        "devices": devices.get_connection_stats(),
        "lamps": lamps.get_connection_stats(),
    }


# ---------------------------------------------------------------------------
# Local-protocol appliances
# ---------------------------------------------------------------------------


@app.get("/api/devices")
async def list_devices(kind: Optional[str] = None) -> Dict[str, List[Dict[str, object]]]:
    if kind:
        return {"devices": devices.get_devices_by_kind(kind)}
    return {"devices": devices.get_all_devices()}


@app.get("/api/devices/stats")
async def device_stats() -> Dict[str, object]:
    return devices.get_connection_stats()


@app.post("/api/devices/connect")
async def connect_all_devices() -> Dict[str, bool]:
    return await devices.connect_all_devices()


@app.post("/api/devices/disconnect")
async def disconnect_all_devices() -> Dict[str, str]:
    await devices.disconnect_all_devices()
    return {"status": "disconnected"}


@app.get("/api/devices/{device_id}")
async def get_device(device_id: str) -> Dict[str, object]:
    return devices.get_device(device_id)


@app.post("/api/devices/{device_id}/connect")
async def connect_device(device_id: str) -> Dict[str, object]:
    await devices.connect_device(device_id)
    return devices.get_device(device_id)


@app.post("/api/devices/{device_id}/disconnect")
async def disconnect_device(device_id: str) -> Dict[str, object]:
    await devices.disconnect_device(device_id)
    return devices.get_device(device_id)


@app.get("/api/devices/{device_id}/status")
async def device_status(device_id: str) -> Dict[str, object]:
    dps = await devices.get_device_status(device_id)
    return {"dps": dps, "parsed": devices.get_device(device_id)["parsed_status"]}


@app.post("/api/devices/{device_id}/command")
async def send_command(device_id: str, request: CommandRequest) -> Dict[str, object]:
    response = await devices.send_command(
        device_id, request.field, request.value, disconnect_after=request.disconnect_after
    )
    return {"status": "ok", "response": response}


@app.get("/api/devices/{device_id}/meal-plan")
async def get_meal_plan(device_id: str) -> Dict[str, object]:
    encoded = devices.get_meal_plan(device_id)
    entries = devices.get_decoded_meal_plan(device_id) or []
    return {
        "encoded": encoded,
        "entries": [entry.to_dict() for entry in entries],
        "formatted": meal_plan.format_plan(entries),
    }


@app.put("/api/devices/{device_id}/meal-plan")
async def push_meal_plan(device_id: str, request: MealPlanRequest) -> Dict[str, object]:
    entries = [MealPlanEntry.from_dict(entry.dict()) for entry in request.entries]
    encoded = await devices.push_meal_plan(device_id, entries)
    return {"status": "ok", "encoded": encoded}


@app.put("/api/devices/{device_id}/meal-plan/cache")
async def set_meal_plan_cache(device_id: str, request: EncodedMealPlanRequest) -> Dict[str, object]:
    meal_plan.decode(request.encoded)
    devices.set_meal_plan(device_id, request.encoded)
    return {"status": "ok", "encoded": request.encoded}


@app.delete("/api/devices/{device_id}/meal-plan")
async def clear_meal_plan(device_id: str) -> Dict[str, str]:
    devices.clear_meal_plan(device_id)
    return {"status": "cleared"}


# ---------------------------------------------------------------------------
# Bluetooth lamps
# ---------------------------------------------------------------------------


@app.get("/api/lamps")
async def list_lamps() -> Dict[str, object]:
    return {"lamps": lamps.get_all_lamps(), "stats": lamps.get_connection_stats()}


@app.get("/api/lamps/stats")
async def lamp_stats() -> Dict[str, object]:
    return lamps.get_connection_stats()


@app.post("/api/lamps/scan")
async def scan_lamps() -> Dict[str, object]:
    result = await lamps.trigger_scan()
    return {"scan": result, "lamps": lamps.get_all_lamps()}


@app.post("/api/lamps/connect")
async def connect_all_lamps() -> Dict[str, bool]:
    return await lamps.connect_all_lamps()


@app.post("/api/lamps/disconnect")
async def disconnect_all_lamps() -> Dict[str, str]:
    await lamps.disconnect_all_lamps()
    return {"status": "disconnected"}


@app.get("/api/lamps/blacklist")
async def get_blacklist() -> Dict[str, List[str]]:
    return {"addresses": lamps.get_blacklist()}


@app.delete("/api/lamps/blacklist/{address}")
async def unblacklist_address(address: str) -> Dict[str, object]:
    if not lamps.unblacklist_address(address):
        raise DeviceNotFoundError(f"Address not blacklisted: {address}")
    return {"status": "removed", "addresses": lamps.get_blacklist()}


@app.get("/api/lamps/{lamp_id}")
async def get_lamp(lamp_id: str) -> Dict[str, object]:
    return lamps.get_lamp(lamp_id)


@app.post("/api/lamps/{lamp_id}/connect")
async def connect_lamp(lamp_id: str) -> Dict[str, object]:
    return await lamps.connect_lamp(lamp_id)


@app.post("/api/lamps/{lamp_id}/disconnect")
async def disconnect_lamp(lamp_id: str) -> Dict[str, object]:
    await lamps.disconnect_lamp(lamp_id)
    return lamps.get_lamp(lamp_id)


@app.post("/api/lamps/{lamp_id}/refresh")
async def refresh_lamp(lamp_id: str) -> Dict[str, object]:
    return await lamps.refresh_lamp_state(lamp_id)


def _lamp_result(lamp_id: str, supported: bool) -> Dict[str, object]:
    return {"supported": supported, "lamp": lamps.get_lamp(lamp_id)}


@app.post("/api/lamps/{lamp_id}/power")
async def set_lamp_power(lamp_id: str, request: PowerRequest) -> Dict[str, object]:
    return _lamp_result(lamp_id, await lamps.set_power(lamp_id, request.on))


@app.post("/api/lamps/{lamp_id}/brightness")
async def set_lamp_brightness(lamp_id: str, request: LevelRequest) -> Dict[str, object]:
    return _lamp_result(lamp_id, await lamps.set_brightness(lamp_id, request.percent))


@app.post("/api/lamps/{lamp_id}/temperature")
async def set_lamp_temperature(lamp_id: str, request: LevelRequest) -> Dict[str, object]:
    return _lamp_result(lamp_id, await lamps.set_temperature(lamp_id, request.percent))


@app.post("/api/lamps/{lamp_id}/state")
async def set_lamp_state(lamp_id: str, request: LampStateRequest) -> Dict[str, object]:
    return _lamp_result(lamp_id, await lamps.set_lamp_state(lamp_id, request.on, request.brightness))


@app.post("/api/lamps/{lamp_id}/rename")
async def rename_lamp(lamp_id: str, request: RenameRequest) -> Dict[str, object]:
    return await lamps.rename_lamp(lamp_id, request.name)


@app.post("/api/lamps/{lamp_id}/blacklist")
async def blacklist_lamp(lamp_id: str) -> Dict[str, object]:
    await lamps.blacklist_lamp(lamp_id)
    return {"status": "blacklisted", "addresses": lamps.get_blacklist()}


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=os.getenv("PETHUB_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run("pethub.main:app", host="0.0.0.0", port=8000, reload=False)
