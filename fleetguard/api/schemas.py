from __future__ import annotations
from datetime import datetime
from pydantic import BaseModel, Field
from typing import Optional, List


class StatusReport(BaseModel):
    timestamp: Optional[datetime] = None  # device clock, informational only
    battery_level: Optional[float] = Field(default=None, alias="batteryLevel")
    wifi_signal: Optional[float] = Field(default=None, alias="wifiSignal")
    uptime: Optional[float] = None
    free_memory: Optional[float] = Field(default=None, alias="freeMemory")
    errors: Optional[List[str]] = None

    model_config = {"populate_by_name": True}


class AckRequest(BaseModel):
    success: bool
    error: Optional[str] = None


class SnapshotIn(BaseModel):
    timestamp: Optional[datetime] = None
    greenhouse_temperature: Optional[float] = None
    soil_moisture: Optional[float] = Field(default=None, ge=0, le=100)
    water_tank_level: Optional[float] = Field(default=None, ge=0, le=100)


class SetStateRequest(BaseModel):
    state: bool
    reason: str = "Manual control"
    duration_s: Optional[int] = Field(default=None, ge=1, le=24 * 3600)


class SetModeRequest(BaseModel):
    mode: str  # validated by the registry so bad values surface as InvalidMode
    reason: str = "Mode change requested"


class ToggleRequest(BaseModel):
    reason: str = "Manual toggle"


class OverrideRequest(BaseModel):
    state: bool
    duration_s: Optional[int] = Field(default=None, ge=1, le=24 * 3600)
    reason: str = "Manual override"


class FailsafeRequest(BaseModel):
    reason: str = "Manual failsafe activation"
