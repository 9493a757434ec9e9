from __future__ import annotations

from pydantic import BaseModel, Field


class SecureEnvelope(BaseModel):
    data: str = Field(..., description="Fernet token wrapping the JSON payload")


class CpuStats(BaseModel):
    cores: int = Field(..., ge=0)
    usage: float = Field(..., ge=0, description="Instantaneous usage in percent")


class MetricsSnapshot(BaseModel):
    cpu: CpuStats
    ram_available: int = Field(..., ge=0, description="Total RAM in bytes")
    ram_used: int = Field(..., ge=0)
    disk_available: int = 0
    disk_used: int = 0
    heap_available: int = Field(..., ge=0, description="Daemon process memory reserved")
    heap_used: int = Field(..., ge=0)
    last_update: int = Field(..., description="Unix time in milliseconds")


class RegisterResponse(BaseModel):
    channel: str = Field(..., min_length=1)


class HeartbeatResponse(BaseModel):
    ok: bool


class IncidentReport(BaseModel):
    instance_id: str
    date: int = Field(..., description="Unix time in milliseconds")
    err: str
    shim_log: str


class InstanceStatsOut(BaseModel):
    id: str
    name: str
    port: int
    status: str
    previous_status: str
    alive: bool
    safe_mode: bool
    last_error: str


class OtpRequest(BaseModel):
    otp: str
