from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


PROD_CLOUD_URL = "https://cloud.thebcms.com/api/v1/shim"
DEV_CLOUD_URL = "http://localhost:8080/api/v1/shim"


@dataclass(frozen=True)
class Settings:
    # Core
    local: bool = _env_bool("FLEET_LOCAL", False)
    prod: bool = _env_bool("FLEET_PROD", False)
    port: int = _env_int("PORT", 1282)
    manage: bool = _env_bool("FLEET_MANAGE", True)
    storage_dir: str = os.getenv("FLEET_STORAGE_DIR", "storage")
    license_dir: str | None = os.getenv("FLEET_LICENSE_DIR")

    # Orchestration
    port_from: int = _env_int("FLEET_PORT_FROM", 1300)
    port_to: int = _env_int("FLEET_PORT_TO", 1400)
    poll_interval_s: float = _env_float("FLEET_POLL_INTERVAL_S", 5)
    runtime_bin: str = os.getenv("FLEET_RUNTIME_BIN", "docker")
    image: str = os.getenv("FLEET_IMAGE", "becomes/cms-backend:latest")
    control_socket: str = os.getenv("FLEET_CONTROL_SOCKET", "/var/run/docker.sock")

    # Health probe against the instance's own port
    instance_host: str = os.getenv("FLEET_INSTANCE_HOST", "localhost")
    health_path: str = os.getenv("FLEET_HEALTH_PATH", "/api/health")
    health_timeout_s: float = _env_float("FLEET_HEALTH_TIMEOUT_S", 2.0)

    # Control plane connection
    cloud_url: str | None = os.getenv("FLEET_CLOUD_URL")
    conn_interval_s: float = _env_float("FLEET_CONN_INTERVAL_S", 1)
    register_backoff_s: float = _env_float("FLEET_REGISTER_BACKOFF_S", 10)
    cloud_timeout_s: float = _env_float("FLEET_CLOUD_TIMEOUT_S", 10)

    # Logging
    log_level: str = os.getenv("FLEET_LOG_LEVEL", "INFO")
    log_format: str = os.getenv("FLEET_LOG_FORMAT", "text")  # text|json

    @property
    def logs_dir(self) -> str:
        return os.path.join(self.storage_dir, "logs")

    @property
    def licenses_path(self) -> str:
        return self.license_dir or os.path.join(self.storage_dir, "licenses")

    @property
    def control_plane_url(self) -> str:
        if self.cloud_url:
            return self.cloud_url.rstrip("/")
        return PROD_CLOUD_URL if self.prod else DEV_CLOUD_URL


settings = Settings()
