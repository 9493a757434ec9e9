import dataclasses

import httpx
import pytest
from fastapi.testclient import TestClient

from fleet.app import DEV_USER, Services, create_app
from fleet.connection import Connection, ConnectionService
from fleet.docker_ops import DockerCli
from fleet.reconciler import Orchestrator
from fleet.security import SecurityService

from .conftest import inspect_json, ps_output, ps_row


def _offline(request):
    raise httpx.ConnectError("offline", request=request)


@pytest.fixture
def make_client(runner, licenses, add_license):
    def _make(config):
        add_license("abc123")
        runner.set("ps", "-a", out=ps_output(ps_row("bcms-instance-abc123")))
        runner.set("inspect", "bcms-instance-abc123", out=inspect_json(1300))
        http = httpx.Client(transport=httpx.MockTransport(_offline), base_url="http://cloud.test")
        orch = Orchestrator(DockerCli(runner=runner), licenses, config, health_check=lambda s: True)
        orch.init()
        conn = ConnectionService(licenses, SecurityService(licenses), http, local=config.local)
        app = create_app(config, Services(orchestrator=orch, connection=conn, http=http), run_loops=False)
        return TestClient(app)

    return _make


def test_list_and_get_instances(make_client, config):
    with make_client(config) as client:
        r = client.get("/instances")
        assert r.status_code == 200
        body = r.json()
        assert [i["id"] for i in body] == ["abc123"]
        assert body[0]["status"] == "active"
        assert body[0]["port"] == 1300

        assert client.get("/instances/abc123").json()["name"] == "bcms-instance-abc123"
        assert client.get("/instances/missing").status_code == 404
        assert client.get("/health").json() == {"ok": True}


def test_instance_actions_and_logs(make_client, config, runner):
    runner.set("logs", "--tail", "5", "bcms-instance-abc123", out="hello\n")
    with make_client(config) as client:
        r = client.post("/instances/abc123/stop")
        assert r.status_code == 200
        assert r.json()["status"] == "down"

        r = client.post("/instances/abc123/remove")
        assert r.json()["status"] == "unknown"
        assert runner.called("rm", "bcms-instance-abc123")
        r = client.post("/instances/abc123/run")
        assert r.json()["status"] == "active"

        assert client.post("/instances/abc123/explode").status_code == 404
        assert client.post("/instances/missing/start").status_code == 404

        assert client.get("/instances/abc123/logs", params={"tail": 5}).json() == {"logs": "hello\n"}


def test_logs_runtime_failure_maps_to_502(make_client, config, runner):
    runner.fail("logs", err="Error: No such container")
    with make_client(config) as client:
        r = client.get("/instances/abc123/logs")
        assert r.status_code == 502
        assert r.json()["detail"] == "Error: No such container"


def test_relay_not_connected_is_403(make_client, config):
    with make_client(config) as client:
        r = client.post("/shim/instance/user/all", headers={"bcms-iid": "abc123"})
        assert r.status_code == 403
        r = client.post("/shim/instance/user/verify/otp", json={"otp": "123"}, headers={"bcms-iid": "abc123"})
        assert r.status_code == 403


def test_relay_failure_is_500(make_client, config):
    with make_client(config) as client:
        conn = client.app.state.services.connection
        conn._connections["abc123"] = Connection(connected=True, channel="ch1")
        r = client.post("/shim/instance/user/all", headers={"bcms-iid": "abc123"})
        assert r.status_code == 500
        assert r.json() == {"detail": "Failed to send a request."}


def test_local_mode_answers_with_dev_user(make_client, config):
    local = dataclasses.replace(config, local=True)
    with make_client(local) as client:
        r = client.post("/shim/instance/user/verify/otp", json={"otp": "123"}, headers={"bcms-iid": "abc123"})
        assert r.json() == {"ok": True, "user": DEV_USER}
        assert client.post("/shim/instance/user/all", headers={"bcms-iid": "abc123"}).json() == {"user": [DEV_USER]}


def test_startup_survives_unlistable_runtime(runner, licenses, add_license, config):
    add_license("abc123")
    runner.fail("ps", "-a", err="Cannot connect to the Docker daemon")
    cfg = dataclasses.replace(config, local=True, manage=False)
    http = httpx.Client(transport=httpx.MockTransport(_offline), base_url="http://cloud.test")
    orch = Orchestrator(DockerCli(runner=runner), licenses, cfg, health_check=lambda s: True)
    conn = ConnectionService(licenses, SecurityService(licenses), http, local=True)
    app = create_app(cfg, Services(orchestrator=orch, connection=conn, http=http))

    with TestClient(app) as client:
        body = client.get("/instances").json()
    assert [(i["id"], i["status"]) for i in body] == [("abc123", "active")]
