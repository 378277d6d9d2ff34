from pathlib import Path

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from hostsync.agent import store
from hostsync.agent.context import AgentContext
from hostsync.agent.features import FeatureGate
from hostsync.agent.main import build_app
from hostsync.security import require_agent_token
from hostsync.settings import Settings

TOKEN = "agent-secret"


@pytest.fixture
def client(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> TestClient:
    monkeypatch.setattr(store, "run_command", lambda cmd, dry_run: (True, ""))
    settings = Settings(
        system_root=str(tmp_path / "root"),
        agent_data_root=str(tmp_path / "data"),
        agent_auth_token=TOKEN,
        running_datastore_path=str(tmp_path / "data" / "running.yaml"),
        startup_datastore_path=str(tmp_path / "data" / "startup.yaml"),
        schema_path=str(tmp_path / "schema.yaml"),
    )
    ctx = AgentContext.from_settings(settings, features=FeatureGate({"timezone-name": True}))
    return TestClient(build_app(ctx, "load"))


def _post(client: TestClient, payload: dict, token: str | None = TOKEN):
    headers = {"x-agent-token": token} if token else {}
    return client.post("/v1/changes", json=payload, headers=headers)


def test_changes_require_token(client: TestClient) -> None:
    payload = {"identity": "/ietf-system:system/hostname", "operation": "created", "new_value": "box"}

    assert _post(client, payload, token=None).status_code == 401
    assert _post(client, payload, token="wrong").status_code == 401


def test_hostname_change_is_applied(client: TestClient, tmp_path: Path) -> None:
    res = _post(client, {"identity": "/ietf-system:system/hostname", "operation": "created", "new_value": "box"})

    assert res.status_code == 200
    assert res.json()["accepted"] is True
    assert (tmp_path / "root/etc/hostname").read_text(encoding="utf-8") == "box\n"


def test_bearer_token_is_accepted(client: TestClient) -> None:
    res = client.post(
        "/v1/changes",
        json={"identity": "/ietf-system:system/hostname", "operation": "moved"},
        headers={"Authorization": f"Bearer {TOKEN}"},
    )

    assert res.status_code == 200


def test_envelope_value_rules_are_validated(client: TestClient) -> None:
    res = _post(
        client,
        {"identity": "/ietf-system:system/hostname", "operation": "deleted", "new_value": "box"},
    )

    assert res.status_code == 422


def test_unknown_identity_fails_the_callback(client: TestClient) -> None:
    res = _post(client, {"identity": "/ietf-system:system/radius/server[name='r']", "operation": "created"})

    assert res.status_code == 400
    assert res.json()["detail"].startswith("callback failed:")


def test_handler_failure_is_reported(client: TestClient) -> None:
    # Nothing links /etc/localtime yet, so the delete must fail.
    res = _post(client, {"identity": "/ietf-system:system/clock/timezone-name", "operation": "deleted"})

    assert res.status_code == 400
    assert res.json()["detail"].startswith("callback failed:")


def test_health_reports_direction_and_features(client: TestClient) -> None:
    res = client.get("/v1/health")

    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "ok"
    assert body["startup_direction"] == "load"
    assert body["features"]["timezone-name"] is True
    assert body["features"]["ntp"] is False


def test_metrics_count_change_events(client: TestClient) -> None:
    _post(client, {"identity": "/ietf-system:system/hostname", "operation": "created", "new_value": "box"})

    assert client.get("/metrics").status_code == 401
    res = client.get("/metrics", headers={"x-agent-token": TOKEN})
    assert res.status_code == 200
    assert "hostsync_change_events_total" in res.text


@pytest.mark.asyncio
async def test_require_agent_token_rejects_unconfigured_token() -> None:
    class _State:
        ctx = type("Ctx", (), {"settings": Settings(agent_auth_token="")})()

    class _App:
        state = _State()

    class _Request:
        app = _App()

    with pytest.raises(HTTPException) as exc:
        await require_agent_token(_Request(), x_agent_token=TOKEN, authorization=None)

    assert exc.value.status_code == 401
