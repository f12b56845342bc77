import os
from pathlib import Path
import sys
import time

from fastapi.testclient import TestClient
import pytest

import copychu
from copychu.config.config import AppSettings
from copychu.config.pipeline import PipelineSettings, StageSpec
from copychu.server.app_factory import create_app

posix_only = pytest.mark.skipif(os.name == "nt", reason="POSIX signals")

TERMINAL = ("succeeded", "failed", "cancelled")
# stage processes import copychu even when it is not installed
SRC_DIR = str(Path(copychu.__file__).resolve().parents[1])


def py(code: str) -> list[str]:
    return [sys.executable, "-u", "-c", code]


def make_settings(tmp_path) -> AppSettings:
    return AppSettings(
        workspace=str(tmp_path / "ws"),
        env="test",
        pipelines={
            "demo": PipelineSettings(
                title="Demo pipeline",
                scripts_dir=str(tmp_path),
                stages=[
                    StageSpec(name="collect", title="Collect", command=py("print('[1/2] collecting'); print('[2/2] collected')")),
                    StageSpec(name="publish", command=py("import os; print('limit', os.environ['PRODUCT_LIMIT'])")),
                ],
                default_params={"PRODUCT_LIMIT": "3"},
            ),
            "slow": PipelineSettings(
                scripts_dir=str(tmp_path),
                stages=[StageSpec(name="wait", command=py("import time; print('waiting'); time.sleep(60)"))],
            ),
            "metered": PipelineSettings(
                scripts_dir=str(tmp_path),
                stages=[
                    StageSpec(
                        name="generate",
                        command=py("from copychu.tools import track_call; print(track_call('generateImage').call_count)"),
                        env={"PYTHONPATH": SRC_DIR},
                    )
                ],
            ),
        },
        runs={"stage_gap_s": 0},
        scheduler={"enabled": False},
        quota={"watch_interval_s": 0.2},
        supervisor={"grace_period_s": 2.0},
    )


@pytest.fixture()
def client(tmp_path):
    app = create_app(cfg=make_settings(tmp_path), configure_logging=False)
    with TestClient(app) as c:
        yield c


def wait_status(client: TestClient, run_id: str, timeout: float = 30.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        data = client.get(f"/api/v1/runs/{run_id}").json()
        if data["status"] in TERMINAL:
            return data
        if time.monotonic() > deadline:
            raise AssertionError(f"run did not finish: {data}")
        time.sleep(0.05)


def test_pipeline_catalog(client: TestClient):
    resp = client.get("/api/v1/pipelines")
    assert resp.status_code == 200
    pipelines = {p["pipeline_id"]: p for p in resp.json()["pipelines"]}
    assert set(pipelines) == {"demo", "slow", "metered"}
    assert [s["name"] for s in pipelines["demo"]["stages"]] == ["collect", "publish"]
    assert pipelines["demo"]["default_params"] == {"PRODUCT_LIMIT": "3"}

    assert client.get("/api/v1/pipelines/demo").json()["title"] == "Demo pipeline"
    assert client.get("/api/v1/pipelines/nope").status_code == 404


def test_trigger_run_and_read_results(client: TestClient):
    resp = client.post("/api/v1/pipelines/demo/runs", json={"params": {"PRODUCT_LIMIT": "8"}})
    assert resp.status_code == 202
    run = resp.json()
    assert run["status"] == "queued"
    assert run["stages"] == ["collect", "publish"]

    final = wait_status(client, run["run_id"])
    assert final["status"] == "succeeded"
    assert [r["outcome"] for r in final["stage_results"]] == ["success", "success"]
    assert final["stage_results"][0]["progress"] == {"current": 2, "total": 2}
    assert final["params"] == {"PRODUCT_LIMIT": "8"}

    logs = client.get(f"/api/v1/runs/{run['run_id']}/logs").json()["events"]
    assert [e["text"] for e in logs] == ["[1/2] collecting", "[2/2] collected", "limit 8"]
    only_publish = client.get(f"/api/v1/runs/{run['run_id']}/logs", params={"stage": "publish"}).json()
    assert [e["text"] for e in only_publish["events"]] == ["limit 8"]

    listed = client.get("/api/v1/runs", params={"pipeline_id": "demo"}).json()["runs"]
    assert [r["run_id"] for r in listed] == [run["run_id"]]


def test_trigger_errors(client: TestClient):
    assert client.post("/api/v1/pipelines/nope/runs", json={}).status_code == 404

    resp = client.post("/api/v1/pipelines/demo/runs", json={"stages": ["collect", "bogus"]})
    assert resp.status_code == 422
    assert resp.json()["detail"]["stages"] == ["bogus"]

    assert client.get("/api/v1/runs/run-missing").status_code == 404
    assert client.post("/api/v1/runs/run-missing/cancel").status_code == 404
    assert client.get("/api/v1/runs/run-missing/logs").status_code == 404


@posix_only
def test_conflict_and_cancel(client: TestClient):
    first = client.post("/api/v1/pipelines/slow/runs").json()

    resp = client.post("/api/v1/pipelines/slow/runs")
    assert resp.status_code == 409
    assert resp.json()["detail"]["run_id"] == first["run_id"]

    deadline = time.monotonic() + 10
    while not client.get(f"/api/v1/runs/{first['run_id']}/logs").json()["events"]:
        assert time.monotonic() < deadline
        time.sleep(0.05)

    cancel = client.post(f"/api/v1/runs/{first['run_id']}/cancel")
    assert cancel.status_code == 202
    assert cancel.json()["cancel_requested"] is True
    assert client.post(f"/api/v1/runs/{first['run_id']}/cancel").status_code == 409

    final = wait_status(client, first["run_id"])
    assert final["status"] == "cancelled"
    assert client.post(f"/api/v1/runs/{first['run_id']}/cancel").status_code == 409


def test_quota_endpoints(client: TestClient):
    quota = client.get("/api/v1/quota").json()
    assert quota["callCount"] == 0
    assert quota["limit"] == 1500
    assert quota["canProceed"] is True

    resp = client.post("/api/v1/quota/calls", json={"label": "generateImage"})
    assert resp.status_code == 200
    assert resp.json()["callCount"] == 1
    assert resp.json()["remaining"] == 1499

    quota = client.get("/api/v1/quota").json()
    assert quota["perFunctionCounts"] == {"generateImage": 1}
    assert client.post("/api/v1/quota/calls", json={"label": ""}).status_code == 422


def test_stage_process_writes_the_shared_quota_record(client: TestClient):
    run = client.post("/api/v1/pipelines/metered/runs").json()
    final = wait_status(client, run["run_id"], timeout=60)
    assert final["status"] == "succeeded", client.get(f"/api/v1/runs/{run['run_id']}/logs").json()

    quota = client.get("/api/v1/quota").json()
    assert quota["callCount"] == 1
    assert quota["perFunctionCounts"] == {"generateImage": 1}
    # counted by the stage process, not by the server's own session
    assert quota["sessionCount"] == 0


def test_schedule_management(client: TestClient):
    resp = client.put("/api/v1/schedules/demo", json={"cron": "0 5 * * *", "params": {"PRODUCT_LIMIT": "1"}})
    assert resp.status_code == 200
    assert resp.json()["next_fire"] is not None

    resp = client.put("/api/v1/schedules/demo", json={"cron": "30 6 * * 1"})
    schedules = client.get("/api/v1/schedules").json()["schedules"]
    assert [(s["pipeline_id"], s["cron"]) for s in schedules] == [("demo", "30 6 * * 1")]
    assert client.get("/api/v1/pipelines/demo").json()["schedule"]["cron"] == "30 6 * * 1"

    resp = client.patch("/api/v1/schedules/demo", json={"enabled": False})
    assert resp.json()["enabled"] is False

    assert client.put("/api/v1/schedules/demo", json={"cron": "61 * * * *"}).status_code == 400
    assert client.put("/api/v1/schedules/nope", json={"cron": "0 5 * * *"}).status_code == 404

    assert client.delete("/api/v1/schedules/demo").status_code == 204
    assert client.delete("/api/v1/schedules/demo").status_code == 404
    assert client.get("/api/v1/schedules/demo").status_code == 404


def test_stats(client: TestClient):
    run = client.post("/api/v1/pipelines/demo/runs").json()
    wait_status(client, run["run_id"])

    stats = client.get("/api/v1/stats").json()
    assert stats["runs_by_status"]["succeeded"] == 1
    assert stats["runs_by_status"]["failed"] == 0
    assert stats["active_runs"] == {}
    assert stats["quota"]["limit"] == 1500


def test_websocket_replays_run_history(client: TestClient):
    run = client.post("/api/v1/pipelines/demo/runs").json()
    wait_status(client, run["run_id"])

    with client.websocket_connect(f"/api/v1/events?run_id={run['run_id']}") as ws:
        assert ws.receive_json() == {"kind": "subscribed", "run_id": run["run_id"]}

        events = []
        while True:
            msg = ws.receive_json()
            if msg["kind"] == "quota":
                continue
            events.append(msg)
            if msg["kind"] == "transition" and msg["status"] in TERMINAL:
                break

        assert events[0]["status"] == "queued"
        assert events[-1]["status"] == "succeeded"
        seqs = [e["seq"] for e in events]
        assert seqs == sorted(seqs)
        assert [e["text"] for e in events if e["kind"] == "log"] == ["[1/2] collecting", "[2/2] collected", "limit 3"]

        ws.send_json({"type": "ping"})
        assert ws.receive_json() == {"kind": "pong"}
        ws.send_json({"type": "unsubscribe"})
        assert ws.receive_json() == {"kind": "unsubscribed"}


def test_caller_chosen_run_id_cannot_be_reused(client: TestClient):
    run = client.post("/api/v1/pipelines/demo/runs", json={"run_id": "demo-nightly"}).json()
    assert run["run_id"] == "demo-nightly"
    wait_status(client, run["run_id"])

    resp = client.post("/api/v1/pipelines/demo/runs", json={"run_id": "demo-nightly"})
    assert resp.status_code == 409
    assert resp.json()["detail"]["error"] == "duplicate_run_id"
    assert client.get("/api/v1/runs/demo-nightly").json()["status"] == "succeeded"
