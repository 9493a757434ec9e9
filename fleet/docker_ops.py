from __future__ import annotations

import json
import logging
import re
import subprocess
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from .errors import RuntimeCommandError


logger = logging.getLogger(__name__)

CONTAINER_PREFIX = "bcms-instance-"
INSTANCE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.]{0,127}$")
_COLUMN_START_RE = re.compile(r" {2,}(?=\S)")


def validate_instance_id(instance_id: str) -> None:
    # Ids end up in container names and shell argv; no dashes, the prefix owns those.
    if not INSTANCE_ID_RE.match(instance_id):
        raise ValueError(f"Invalid instance id {instance_id!r}. Use letters, digits, '_' and '.'.")


def container_name(instance_id: str) -> str:
    return f"{CONTAINER_PREFIX}{instance_id}"


@dataclass(frozen=True)
class ExecResult:
    returncode: int
    out: str
    err: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def error(self) -> str:
        """Text to store as the failure message."""
        return (self.err or self.out).strip()


@dataclass(frozen=True)
class ContainerInspection:
    id: str
    name: str
    running: bool
    port: int | None


Runner = Callable[[Sequence[str]], ExecResult]


def subprocess_runner(args: Sequence[str]) -> ExecResult:
    try:
        proc = subprocess.run(list(args), capture_output=True, text=True, check=False)
    except OSError as e:
        return ExecResult(returncode=127, out="", err=f"{type(e).__name__}: {e}")
    return ExecResult(returncode=proc.returncode, out=proc.stdout, err=proc.stderr)


def column_offsets(header: str) -> list[int]:
    """Start offsets of each column in a `ps`-style header line.

    The first column starts at 0; every further column starts at the first
    non-space character that follows a run of two or more spaces.
    """
    header = header.rstrip("\r\n")
    return [0] + [m.end() for m in _COLUMN_START_RE.finditer(header)]


def split_row(line: str, offsets: list[int]) -> list[str]:
    fields: list[str] = []
    for i, start in enumerate(offsets):
        end = offsets[i + 1] if i + 1 < len(offsets) else None
        fields.append(line[start:end].strip())
    return fields


def parse_table(text: str) -> list[dict[str, str]]:
    """Parse column-aligned CLI output into rows keyed by header title."""
    lines = text.splitlines()
    if not lines:
        return []
    offsets = column_offsets(lines[0])
    titles = split_row(lines[0], offsets)
    rows: list[dict[str, str]] = []
    for line in lines[1:]:
        if not line.strip():
            continue
        rows.append(dict(zip(titles, split_row(line, offsets))))
    return rows


def first_host_port(inspect_json: str) -> int | None:
    data: Any = json.loads(inspect_json)
    if not isinstance(data, list) or not data:
        return None
    ports = ((data[0] or {}).get("NetworkSettings") or {}).get("Ports") or {}
    for bindings in ports.values():
        if not bindings:
            continue
        host_port = bindings[0].get("HostPort")
        if host_port:
            return int(host_port)
    return None


class DockerCli:
    """Text-in/text-out boundary around the container runtime CLI."""

    def __init__(
        self,
        binary: str = "docker",
        image: str = "becomes/cms-backend:latest",
        control_socket: str = "/var/run/docker.sock",
        runner: Runner | None = None,
    ):
        self.binary = binary
        self.image = image
        self.control_socket = control_socket
        self._runner = runner or subprocess_runner

    def _exec(self, *args: str) -> ExecResult:
        cmd = [self.binary, *args]
        res = self._runner(cmd)
        if not res.ok:
            logger.debug("%s exited with %s: %s", " ".join(cmd), res.returncode, res.error)
        return res

    def _exec_or_raise(self, *args: str) -> str:
        res = self._exec(*args)
        if not res.ok:
            raise RuntimeCommandError([self.binary, *args], res.returncode, res.err or res.out)
        return res.out

    def available(self) -> bool:
        return self._exec("version").ok

    def list_containers(self) -> list[ContainerInspection]:
        out = self._exec_or_raise("ps", "-a")
        result: list[ContainerInspection] = []
        for row in parse_table(out):
            name = row.get("NAMES", "")
            if not name.startswith(CONTAINER_PREFIX):
                continue
            try:
                port = first_host_port(self.inspect_container(name))
            except RuntimeCommandError as e:
                # the container can vanish between ps and inspect
                logger.warning("Cannot inspect container %s: %s", name, e.stderr.strip())
                port = None
            result.append(
                ContainerInspection(
                    id=name[len(CONTAINER_PREFIX):],
                    name=name,
                    running=row.get("STATUS", "").startswith("Up"),
                    port=port,
                )
            )
        return result

    def inspect_container(self, name: str) -> str:
        return self._exec_or_raise("inspect", name)

    def container_logs(self, name: str, tail: int) -> str:
        return self._exec_or_raise("logs", "--tail", str(int(tail)), name)

    def run(self, name: str, port: int, bindings: Sequence[tuple[str, str]] = ()) -> ExecResult:
        """Create and start a detached container publishing `port` on itself.

        The runtime control socket is always mounted so the instance can manage
        sibling containers; `bindings` are extra host:container mounts.
        """
        args = [
            "run",
            "-d",
            "-p",
            f"{port}:{port}",
            "-v",
            f"{self.control_socket}:{self.control_socket}",
        ]
        for host_path, container_path in bindings:
            args.extend(["-v", f"{host_path}:{container_path}"])
        args.extend(["--name", name, self.image])
        return self._exec(*args)

    def start(self, name: str) -> ExecResult:
        return self._exec("start", name)

    def stop(self, name: str) -> ExecResult:
        return self._exec("stop", name)

    def restart(self, name: str) -> ExecResult:
        return self._exec("restart", name)

    def remove(self, name: str) -> ExecResult:
        return self._exec("rm", name)
