from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from threading import Event, Lock, Thread
from typing import Any, Callable

import httpx

from .api_models import HeartbeatResponse, IncidentReport, MetricsSnapshot, RegisterResponse
from .errors import DecryptError, EncryptError, LicenseError, NotConnectedError, RelayError
from .licenses import LicenseStore
from .metrics import collect_metrics
from .security import SecurityService


logger = logging.getLogger(__name__)

# Failures that mean "the control plane did not accept us this cycle".
_CHANNEL_ERRORS = (httpx.HTTPError, DecryptError, EncryptError, LicenseError, ValueError)


@dataclass
class Connection:
    connected: bool = False
    channel: str = ""
    register_after: float = 0.0


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return str(body)[:200]


class ConnectionService:
    """Registers every licensed instance with the control plane and keeps it alive.

    Each instance gets a channel token from `POST /register`; afterwards a
    metrics heartbeat goes to `POST /conn/<channel>` every cycle. A failed
    registration waits `backoff_s` before the next attempt, a failed heartbeat
    drops the connection so the next cycle registers again.
    """

    def __init__(
        self,
        licenses: LicenseStore,
        security: SecurityService,
        http: httpx.Client,
        probe: Callable[[str], bool] | None = None,
        metrics: Callable[[], MetricsSnapshot] = collect_metrics,
        interval_s: float = 1.0,
        backoff_s: float = 10.0,
        local: bool = False,
        clock: Callable[[], float] = time.time,
    ):
        self.licenses = licenses
        self.security = security
        self.http = http
        self.probe = probe
        self.metrics = metrics
        self.interval_s = interval_s
        self.backoff_s = backoff_s
        self.local = local
        self.clock = clock
        self._lock = Lock()
        self._connections: dict[str, Connection] = {}
        self._stop = Event()
        self._thr: Thread | None = None

    # -- loop -----------------------------------------------------------------

    def start(self) -> None:
        if self.local:
            logger.warning("Local development mode: control plane connection is disabled")
            return
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, name="fleet-connection", daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop.set()

    def _loop(self) -> None:
        logger.info("Connection loop started")
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Connection tick failed")
            self._stop.wait(self.interval_s)

    def tick(self) -> None:
        if self.local:
            return
        for instance_id in self.licenses.list_licensed_ids():
            try:
                self._handle(instance_id)
            except Exception:
                logger.exception("Connection handling failed for instance '%s'", instance_id)

    def _handle(self, instance_id: str) -> None:
        with self._lock:
            conn = self._connections.get(instance_id)
            if conn is None:
                conn = Connection(connected=False, channel="", register_after=self.clock() - 1)
                self._connections[instance_id] = conn

        if not conn.connected:
            if conn.register_after < self.clock():
                channel = self.register(instance_id)
                with self._lock:
                    if channel:
                        conn.channel = channel
                        conn.connected = True
                    else:
                        conn.register_after = self.clock() + self.backoff_s
                if channel:
                    logger.info("Instance '%s' registered with the control plane", instance_id)
                else:
                    logger.warning(
                        "Instance '%s' failed to register, next attempt in %ss", instance_id, self.backoff_s
                    )
        elif not self.send_stats(instance_id, conn.channel):
            logger.warning("Connection failed for instance '%s'", instance_id)
            with self._lock:
                conn.connected = False

        if self.probe is not None and not self.probe(instance_id):
            logger.debug("Instance '%s' is not responding to health checks", instance_id)

    # -- control plane calls --------------------------------------------------

    def _post(self, instance_id: str, path: str, payload: Any) -> httpx.Response:
        body = self.security.enc(instance_id, payload).model_dump()
        return self.http.post(path, json=body, headers={"iid": instance_id})

    def register(self, instance_id: str) -> str | None:
        """Return a channel token, or None when the control plane refused."""
        try:
            resp = self._post(instance_id, "/register", self.metrics().model_dump())
            if resp.status_code != 200:
                logger.warning("register %s: %s - %s", instance_id, resp.status_code, _error_message(resp))
                return None
            res = RegisterResponse.model_validate(self.security.dec(instance_id, resp.json()))
            return res.channel
        except _CHANNEL_ERRORS as e:
            logger.error("register %s failed: %s: %s", instance_id, type(e).__name__, e)
            return None

    def send_stats(self, instance_id: str, channel: str) -> bool:
        try:
            resp = self._post(instance_id, f"/conn/{channel}", self.metrics().model_dump())
            if resp.status_code != 200:
                logger.warning("heartbeat %s: %s - %s", instance_id, resp.status_code, _error_message(resp))
                return False
            res = HeartbeatResponse.model_validate(self.security.dec(instance_id, resp.json()))
            return res.ok
        except _CHANNEL_ERRORS as e:
            logger.error("heartbeat %s failed: %s: %s", instance_id, type(e).__name__, e)
            return False

    def send(self, instance_id: str, path: str, payload: Any) -> Any:
        """Relay `payload` to `/conn/<channel><path>` and return the decrypted answer.

        Raises NotConnectedError without touching the network when the instance
        has no live channel, RelayError for anything that fails afterwards.
        """
        with self._lock:
            conn = self._connections.get(instance_id)
            channel = conn.channel if conn is not None and conn.connected else None
        if channel is None:
            raise NotConnectedError(f"Instance '{instance_id}' is not connected.")
        try:
            resp = self._post(instance_id, f"/conn/{channel}{path}", payload)
            if resp.status_code != 200:
                raise RelayError(f"Control plane answered {resp.status_code}: {_error_message(resp)}")
            return self.security.dec(instance_id, resp.json())
        except RelayError:
            logger.error("send %s%s failed", instance_id, path)
            raise
        except _CHANNEL_ERRORS as e:
            logger.error("send %s%s failed: %s: %s", instance_id, path, type(e).__name__, e)
            raise RelayError("Failed to send a request.") from e

    def log_incident(self, report: IncidentReport) -> None:
        try:
            resp = self._post(report.instance_id, "/log", report.model_dump())
        except _CHANNEL_ERRORS as e:
            raise RelayError(f"Failed to submit incident for '{report.instance_id}': {e}") from e
        if resp.status_code != 200:
            raise RelayError(
                f"Incident for '{report.instance_id}' rejected: {resp.status_code} - {_error_message(resp)}"
            )

    # -- views ----------------------------------------------------------------

    def get_connection(self, instance_id: str) -> Connection | None:
        with self._lock:
            conn = self._connections.get(instance_id)
            return replace(conn) if conn is not None else None

    def is_connected(self, instance_id: str) -> bool:
        conn = self.get_connection(instance_id)
        return bool(conn and conn.connected)
