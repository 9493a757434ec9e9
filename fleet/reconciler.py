from __future__ import annotations

import logging
import os
import time
from threading import Event, Thread
from typing import Callable

from .api_models import IncidentReport
from .docker_ops import DockerCli, ExecResult, container_name, validate_instance_id
from .errors import FleetError, PortExhaustedError, RuntimeCommandError, UnknownInstanceError
from .health import check_health, instance_health_url
from .licenses import LicenseStore
from .logs import read_daily_log
from .runtime import ACTIVE, DOWN, DOWN_TO_ERROR, UNKNOWN, Instance, InstanceRegistry, InstanceStats
from .settings import Settings


logger = logging.getLogger(__name__)

# host sub-directory of storage/<id> -> mount point inside the instance
INSTANCE_MOUNTS = {
    "plugins": "/app/plugins",
    "functions": "/app/functions",
    "events": "/app/events",
    "jobs": "/app/jobs",
}


class Orchestrator:
    """Keeps one container per licensed instance alive.

    In managed mode every tick walks each instance through its state machine:
    active instances are health checked and restarted when unhealthy, unknown
    ones are created, down ones are started, and instances that fell into
    down-to-error get one safe-mode recovery (incident report, remove, run
    without bind mounts) per failure episode. In unmanaged mode only health is
    refreshed.

    Only the orchestrator mutates instance state; callers get InstanceStats.
    """

    def __init__(
        self,
        docker: DockerCli,
        licenses: LicenseStore,
        config: Settings,
        registry: InstanceRegistry | None = None,
        health_check: Callable[[InstanceStats], bool] | None = None,
        incident_reporter: Callable[[IncidentReport], None] | None = None,
        read_log: Callable[[], str] | None = None,
    ):
        self.docker = docker
        self.licenses = licenses
        self.config = config
        self.registry = registry or InstanceRegistry()
        self.health_check = health_check or self._http_health_check
        self.incident_reporter = incident_reporter
        self.read_log = read_log or (lambda: read_daily_log(config.logs_dir))
        self._stop = Event()
        self._thr: Thread | None = None

    # -- lifecycle ------------------------------------------------------------

    def init(self) -> None:
        """Build the registry from the license store and the live containers."""
        if not self.docker.available():
            logger.error("Container runtime '%s' is not available", self.docker.binary)
        licensed = set(self.licenses.list_licensed_ids())

        try:
            containers = self.docker.list_containers()
        except RuntimeCommandError as e:
            logger.error("Cannot list containers: %s", e)
            containers = []

        for c in containers:
            try:
                if c.id not in licensed:
                    logger.warning("Removing container %s: instance '%s' has no license", c.name, c.id)
                    self.docker.stop(c.name)
                    self._log_exec("rm", c.id, c.name, self.docker.remove(c.name))
                    continue
                if c.running:
                    self._adopt(c.id, preferred_port=c.port, status=ACTIVE)
                    continue
                # A stopped container is stale; recreate it from scratch.
                res = self.docker.remove(c.name)
                self._log_exec("rm", c.id, c.name, res)
                self._adopt(c.id, status=UNKNOWN if res.ok else DOWN)
            except (FleetError, ValueError) as e:
                logger.error("Cannot initialize instance '%s': %s", c.id, e)

        self._adopt_new_licenses()
        logger.info("Orchestrator initialized with %d instance(s)", len(self.registry.ids()))

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        if self.config.manage:
            target = self._loop
        else:
            logger.warning("Unmanaged mode: instances are observed only, never remediated")
            for instance_id in self.registry.ids():
                with self.registry.hold(instance_id) as inst:
                    if inst is not None:
                        inst.set_status(ACTIVE)
            target = self._health_loop
        self._thr = Thread(target=target, name="fleet-orchestrator", daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop.set()

    def _loop(self) -> None:
        logger.info("Orchestrator started")
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Orchestrator tick failed")
            self._stop.wait(self.config.poll_interval_s)

    def _health_loop(self) -> None:
        logger.info("Health refresh started")
        while not self._stop.is_set():
            try:
                self.refresh_health()
            except Exception:
                logger.exception("Health refresh failed")
            self._stop.wait(self.config.poll_interval_s)

    # -- reconciliation -------------------------------------------------------

    def tick(self) -> None:
        self._adopt_new_licenses()
        for instance_id in self.registry.ids():
            try:
                with self.registry.hold(instance_id) as inst:
                    if inst is not None:
                        self._reconcile(inst)
            except Exception:
                logger.exception("Reconciliation failed for instance '%s'", instance_id)

    def refresh_health(self) -> None:
        # unmanaged instances are never created, so new ones are assumed up
        self._adopt_new_licenses(status=ACTIVE)
        for instance_id in self.registry.ids():
            with self.registry.hold(instance_id) as inst:
                if inst is None:
                    continue
                alive = self.health_check(inst.stats())
                if alive != inst.alive:
                    if alive:
                        logger.info("Instance '%s' is healthy", inst.id)
                    else:
                        logger.warning("Instance '%s' is not healthy", inst.id)
                inst.alive = alive

    def _reconcile(self, inst: Instance) -> None:
        # Only active instances are probed; any other status needs action.
        if inst.status == ACTIVE:
            inst.alive = self.health_check(inst.stats())
            if inst.alive:
                return
            logger.warning("Instance '%s' failed its health check, restarting", inst.id)
            self._restart(inst)
        elif inst.status == UNKNOWN:
            self._run(inst)
        elif inst.status == DOWN:
            self._start(inst)
        elif inst.status == DOWN_TO_ERROR and inst.previous_status != DOWN_TO_ERROR:
            self._recover(inst)

    def _recover(self, inst: Instance) -> None:
        self._report_incident(inst)
        logger.warning("Starting safe mode for instance '%s'", inst.id)
        inst.safe_mode = True
        if self._remove(inst):
            self._run(inst)
            # One recovery per failure episode; further ones need an operator.
            inst.previous_status = DOWN_TO_ERROR

    def _report_incident(self, inst: Instance) -> None:
        if self.incident_reporter is None:
            return
        try:
            log_text = self.read_log()
        except OSError as e:
            logger.error("Cannot read daemon log for incident of '%s': %s", inst.id, e)
            log_text = ""
        report = IncidentReport(
            instance_id=inst.id,
            date=int(time.time() * 1000),
            err=inst.last_error,
            shim_log=log_text,
        )
        try:
            self.incident_reporter(report)
        except FleetError as e:
            logger.error("Incident report for '%s' failed: %s", inst.id, e)

    # -- container operations -------------------------------------------------

    def _log_exec(self, op: str, instance_id: str, name: str, res: ExecResult) -> None:
        if res.ok:
            logger.info("%s: container %s (instance '%s') ok", op, name, instance_id)
        else:
            logger.error(
                "%s: container %s (instance '%s') failed with exit %s: %s",
                op,
                name,
                instance_id,
                res.returncode,
                res.error,
            )

    def _apply(self, op: str, inst: Instance, res: ExecResult, success_status: str) -> bool:
        self._log_exec(op, inst.id, inst.name, res)
        if not res.ok:
            inst.last_error = res.error
            inst.set_status(DOWN_TO_ERROR)
            return False
        inst.last_error = ""
        inst.set_status(success_status)
        return True

    def bindings(self, instance_id: str) -> list[tuple[str, str]]:
        base = os.path.abspath(os.path.join(self.config.storage_dir, instance_id))
        return [(os.path.join(base, sub), target) for sub, target in INSTANCE_MOUNTS.items()]

    def _run(self, inst: Instance) -> bool:
        binds = [] if inst.safe_mode else self.bindings(inst.id)
        return self._apply("run", inst, self.docker.run(inst.name, inst.port, binds), ACTIVE)

    def _start(self, inst: Instance) -> bool:
        return self._apply("start", inst, self.docker.start(inst.name), ACTIVE)

    def _restart(self, inst: Instance) -> bool:
        return self._apply("restart", inst, self.docker.restart(inst.name), ACTIVE)

    def _stop_container(self, inst: Instance) -> bool:
        return self._apply("stop", inst, self.docker.stop(inst.name), DOWN)

    def _remove(self, inst: Instance) -> bool:
        # A failed stop is expected for containers that already exited.
        self._log_exec("stop", inst.id, inst.name, self.docker.stop(inst.name))
        if not self._apply("rm", inst, self.docker.remove(inst.name), UNKNOWN):
            return False
        inst.alive = False
        return True

    # -- registry -------------------------------------------------------------

    def _adopt(self, instance_id: str, preferred_port: int | None = None, status: str = UNKNOWN) -> Instance:
        validate_instance_id(instance_id)
        inst = self.registry.create(
            instance_id,
            container_name(instance_id),
            self.config.port_from,
            self.config.port_to,
            preferred_port=preferred_port,
        )
        inst.status = status
        inst.previous_status = status
        logger.info("Tracking instance '%s' on port %d (%s)", inst.id, inst.port, status)
        return inst

    def _adopt_new_licenses(self, status: str = UNKNOWN) -> None:
        for instance_id in self.licenses.list_licensed_ids():
            if instance_id in self.registry:
                continue
            try:
                self._adopt(instance_id, status=status)
            except PortExhaustedError as e:
                logger.error("Cannot create instance '%s': %s", instance_id, e)
            except ValueError as e:
                logger.error("Skipping license '%s': %s", instance_id, e)

    def _http_health_check(self, stats: InstanceStats) -> bool:
        url = instance_health_url(self.config.instance_host, stats.port, self.config.health_path)
        ok, msg, _latency = check_health(url, timeout_s=self.config.health_timeout_s)
        if not ok:
            logger.debug("Health check %s for '%s': %s", url, stats.id, msg)
        return ok

    # -- queries and manual operations ----------------------------------------

    def get_instance(self, instance_id: str) -> InstanceStats | None:
        inst = self.registry.get(instance_id)
        return inst.stats() if inst is not None else None

    def list_instances(self, query: Callable[[InstanceStats], bool] | None = None) -> list[InstanceStats]:
        stats = self.registry.stats()
        if query is None:
            return stats
        return [s for s in stats if query(s)]

    def probe(self, instance_id: str) -> bool:
        """Health check without touching instance state."""
        stats = self.get_instance(instance_id)
        if stats is None:
            return False
        return self.health_check(stats)

    def container_logs(self, instance_id: str, tail: int = 100) -> str:
        stats = self.get_instance(instance_id)
        if stats is None:
            raise UnknownInstanceError(f"Unknown instance '{instance_id}'")
        return self.docker.container_logs(stats.name, tail)

    def _manual(self, instance_id: str, action: Callable[[Instance], bool]) -> InstanceStats:
        with self.registry.hold(instance_id) as inst:
            if inst is None:
                raise UnknownInstanceError(f"Unknown instance '{instance_id}'")
            action(inst)
            return inst.stats()

    def run_instance(self, instance_id: str) -> InstanceStats:
        return self._manual(instance_id, self._run)

    def start_instance(self, instance_id: str) -> InstanceStats:
        return self._manual(instance_id, self._start)

    def stop_instance(self, instance_id: str) -> InstanceStats:
        return self._manual(instance_id, self._stop_container)

    def restart_instance(self, instance_id: str) -> InstanceStats:
        return self._manual(instance_id, self._restart)

    def remove_instance(self, instance_id: str) -> InstanceStats:
        return self._manual(instance_id, self._remove)
