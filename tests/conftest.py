import json
import os
import sys

import pytest

# Ensure project root is importable (so `import fleet` works without installing)
_project_root = os.path.dirname(os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from fleet.docker_ops import ExecResult  # noqa: E402
from fleet.licenses import LicenseStore  # noqa: E402
from fleet.settings import Settings  # noqa: E402


PS_WIDTHS = [15, 29, 25, 15, 28, 25]
PS_HEADER = ["CONTAINER ID", "IMAGE", "COMMAND", "CREATED", "STATUS", "PORTS", "NAMES"]


def ps_line(cols):
    """Lay out `ps -a` columns the way the CLI aligns them."""
    parts = [c.ljust(w) for c, w in zip(cols[:-1], PS_WIDTHS)]
    return "".join(parts) + cols[-1]


def ps_output(*rows):
    return "\n".join([ps_line(PS_HEADER)] + [ps_line(r) for r in rows]) + "\n"


def ps_row(name, status="Up 2 hours", ports="0.0.0.0:1300->1300/tcp"):
    return ["3f2a1b9c8d7e", "becomes/cms-backend:latest", '"docker-entrypoint.s…"', "2 hours ago", status, ports, name]


def inspect_json(host_port=None):
    ports = {}
    if host_port is not None:
        ports["%d/tcp" % host_port] = [{"HostIp": "0.0.0.0", "HostPort": str(host_port)}]
    return json.dumps([{"Name": "/x", "NetworkSettings": {"Ports": ports}}])


class FakeRunner:
    """Stands in for the runtime CLI; records argv and replays canned results.

    Results are looked up by the full argv (without the binary) first, then by
    subcommand. A list of results is consumed in order, the last one repeats.
    """

    def __init__(self):
        self.calls = []
        self.results = {}

    def set(self, *key, out="", err="", code=0):
        self.results[tuple(key)] = ExecResult(returncode=code, out=out, err=err)

    def fail(self, *key, err="Error response from daemon", code=1):
        self.set(*key, err=err, code=code)

    def sequence(self, *key, results):
        self.results[tuple(key)] = list(results)

    def __call__(self, cmd):
        cmd = list(cmd)
        self.calls.append(cmd)
        args = tuple(cmd[1:])
        res = self.results.get(args, self.results.get(args[:1]))
        if isinstance(res, list):
            return res.pop(0) if len(res) > 1 else res[0]
        return res or ExecResult(returncode=0, out="", err="")

    def subcommands(self):
        return [c[1] for c in self.calls]

    def called(self, *args):
        return [c for c in self.calls if tuple(c[1 : 1 + len(args)]) == args]


@pytest.fixture
def runner():
    r = FakeRunner()
    r.set("ps", "-a", out=ps_output())
    return r


@pytest.fixture
def config(tmp_path):
    return Settings(
        storage_dir=str(tmp_path / "storage"),
        license_dir=str(tmp_path / "licenses"),
        port_from=1300,
        port_to=1310,
        manage=True,
        local=False,
        poll_interval_s=0.01,
        conn_interval_s=0.01,
        register_backoff_s=10,
    )


@pytest.fixture
def license_dir(config):
    os.makedirs(config.licenses_path, exist_ok=True)
    return config.licenses_path


@pytest.fixture
def add_license(license_dir):
    def _add(instance_id, secret=None):
        with open(os.path.join(license_dir, f"{instance_id}.license"), "w", encoding="utf-8") as fh:
            fh.write(secret or f"secret-{instance_id}")

    return _add


@pytest.fixture
def licenses(license_dir):
    return LicenseStore(license_dir)
