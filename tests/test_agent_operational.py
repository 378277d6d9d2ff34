from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import yaml
from fastapi.testclient import TestClient

from hostsync.agent import operational, store
from hostsync.agent.context import AgentContext
from hostsync.agent.features import FeatureGate
from hostsync.agent.main import build_app
from hostsync.agent.operational import RpcError
from hostsync.agent.system import SystemStateError
from hostsync.settings import Settings

TOKEN = "agent-secret"
NOW = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


def _write(p: Path, content: str) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(content, encoding="utf-8")


def _ctx(tmp_path: Path, features: dict[str, bool] | None = None) -> AgentContext:
    settings = Settings(
        system_root=str(tmp_path / "root"),
        agent_data_root=str(tmp_path / "data"),
        agent_auth_token=TOKEN,
        agent_dry_run=False,
        running_datastore_path=str(tmp_path / "data" / "running.yaml"),
        startup_datastore_path=str(tmp_path / "data" / "startup.yaml"),
        schema_path=str(tmp_path / "schema.yaml"),
    )
    return AgentContext.from_settings(settings, features=FeatureGate(features or {}))


@pytest.fixture
def commands(monkeypatch: pytest.MonkeyPatch) -> list[str]:
    calls: list[str] = []

    def _fake_run(cmd: str, dry_run: bool) -> tuple[bool, str]:
        calls.append(cmd)
        return True, ""

    monkeypatch.setattr(store, "run_command", _fake_run)
    return calls


def test_system_state_reports_platform_and_clock(tmp_path: Path) -> None:
    _write(tmp_path / "root" / "proc" / "uptime", "3600.25 7000.00\n")
    ctx = _ctx(tmp_path)

    data = operational.system_state(ctx, now=NOW).to_data()

    assert set(data["platform"]) == {"os-name", "os-release", "os-version", "machine"}
    assert data["clock"]["current-datetime"] == "2024-01-02T03:04:05+00:00"
    assert data["clock"]["boot-datetime"] == (NOW - timedelta(seconds=3600.25)).isoformat(timespec="seconds")


@pytest.mark.parametrize("content", [None, "", "soon\n"])
def test_system_state_needs_readable_uptime(tmp_path: Path, content: str | None) -> None:
    if content is not None:
        _write(tmp_path / "root" / "proc" / "uptime", content)
    ctx = _ctx(tmp_path)

    with pytest.raises(SystemStateError):
        operational.system_state(ctx, now=NOW)


def test_set_current_datetime_renders_utc_command(tmp_path: Path, commands: list[str]) -> None:
    ctx = _ctx(tmp_path)

    operational.set_current_datetime(ctx, "2024-01-02T05:04:05+02:00")

    assert commands == ["timedatectl set-time '2024-01-02 03:04:05 UTC'"]


@pytest.mark.parametrize("value", ["yesterday", "2024-01-02T03:04:05"])
def test_set_current_datetime_rejects_unusable_values(tmp_path: Path, commands: list[str], value: str) -> None:
    ctx = _ctx(tmp_path)

    with pytest.raises(RpcError):
        operational.set_current_datetime(ctx, value)
    assert commands == []


def test_set_current_datetime_refused_while_ntp_is_enabled(tmp_path: Path, commands: list[str]) -> None:
    _write(
        tmp_path / "data" / "running.yaml",
        yaml.safe_dump({"ietf-system:system": {"hostname": "box", "ntp": {"enabled": True}}}),
    )
    ctx = _ctx(tmp_path, {"ntp": True})

    with pytest.raises(RpcError, match="ntp-active"):
        operational.set_current_datetime(ctx, "2024-01-02T03:04:05+00:00")
    assert commands == []


def test_disabled_ntp_leaves_the_clock_settable(tmp_path: Path, commands: list[str]) -> None:
    _write(
        tmp_path / "data" / "running.yaml",
        yaml.safe_dump({"ietf-system:system": {"hostname": "box", "ntp": {"enabled": False}}}),
    )
    ctx = _ctx(tmp_path, {"ntp": True})

    operational.set_current_datetime(ctx, "2024-01-02T03:04:05+00:00")

    assert len(commands) == 1


def test_restart_and_shutdown_run_their_commands(tmp_path: Path, commands: list[str]) -> None:
    ctx = _ctx(tmp_path)

    operational.restart(ctx)
    operational.shutdown(ctx)

    assert commands == ["systemctl reboot", "systemctl poweroff"]


def test_failed_command_becomes_rpc_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(store, "run_command", lambda cmd, dry_run: (False, "Access denied"))
    ctx = _ctx(tmp_path)

    with pytest.raises(RpcError, match="Access denied"):
        operational.restart(ctx)


@pytest.fixture
def client(tmp_path: Path, commands: list[str]) -> TestClient:
    _write(tmp_path / "root" / "proc" / "uptime", "120.00 200.00\n")
    return TestClient(build_app(_ctx(tmp_path), "load"))


def _headers() -> dict[str, str]:
    return {"x-agent-token": TOKEN}


def test_state_endpoint(client: TestClient) -> None:
    assert client.get("/v1/state").status_code == 401

    res = client.get("/v1/state", headers=_headers())

    assert res.status_code == 200
    body = res.json()
    assert "os-name" in body["platform"]
    assert "boot-datetime" in body["clock"]


def test_state_endpoint_without_uptime(client: TestClient, tmp_path: Path) -> None:
    (tmp_path / "root" / "proc" / "uptime").unlink()

    res = client.get("/v1/state", headers=_headers())

    assert res.status_code == 503
    assert res.json()["detail"].startswith("state unavailable:")


def test_rpc_endpoints(client: TestClient, commands: list[str]) -> None:
    res = client.post(
        "/v1/rpc/set-current-datetime",
        json={"current_datetime": "2024-01-02T03:04:05+00:00"},
        headers=_headers(),
    )
    assert res.status_code == 200
    assert res.json()["accepted"] is True

    assert client.post("/v1/rpc/restart", headers=_headers()).status_code == 200
    assert client.post("/v1/rpc/shutdown", headers=_headers()).status_code == 200
    assert client.post("/v1/rpc/shutdown").status_code == 401
    assert commands == [
        "timedatectl set-time '2024-01-02 03:04:05 UTC'",
        "systemctl reboot",
        "systemctl poweroff",
    ]


def test_rpc_failure_is_reported(client: TestClient) -> None:
    res = client.post("/v1/rpc/set-current-datetime", json={"current_datetime": "noon"}, headers=_headers())

    assert res.status_code == 400
    assert res.json()["detail"].startswith("rpc failed:")


def test_change_requests_are_labelled_by_item(client: TestClient) -> None:
    client.post(
        "/v1/changes",
        json={"identity": "/ietf-system:system/hostname", "operation": "created", "new_value": "box"},
        headers=_headers(),
    )

    res = client.get("/metrics", headers=_headers())
    assert 'item="hostname"' in res.text
    assert "hostsync_rpc_calls_total" in res.text
