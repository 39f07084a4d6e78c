"""Tests for the HTTP API."""

import pytest
from fastapi.testclient import TestClient

from storyboard import app as app_module
from storyboard.app import app, get_config, get_history, get_provider
from storyboard.history import FileHistoryStore
from storyboard.models import RunStatus


@pytest.fixture
def history(tmp_path):
    return FileHistoryStore(str(tmp_path / "history.json"))


@pytest.fixture
def client(provider, fast_config, history):
    app.dependency_overrides[get_provider] = lambda: provider
    app.dependency_overrides[get_config] = lambda: fast_config
    app.dependency_overrides[get_history] = lambda: history
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app_module.RUNS.clear()


def _body(scene_count=3, **overrides):
    body = {
        "title": "Neon Rooftops",
        "synopsis": "Two friends chase a song across a city of rooftops.",
        "characters": [{"name": "Mara", "description": "Red coat"}],
        "scene_count": scene_count,
    }
    body.update(overrides)
    return body


def _start(client, **overrides) -> str:
    resp = client.post("/v1/storyboard:start", json=_body(**overrides))
    assert resp.status_code == 200
    return resp.json()["run_id"]


class TestRuns:

    def test_health(self, client):
        resp = client.get("/health")

        assert resp.status_code == 200
        assert resp.json()["ok"] is True

    def test_invalid_request_is_rejected_before_any_call(self, client, provider):
        resp = client.post("/v1/storyboard:start", json=_body(synopsis=" "))

        assert resp.status_code == 400
        assert provider.text_calls == []
        assert app_module.RUNS == {}

    def test_incomplete_character_reports_slots(self, client):
        resp = client.post("/v1/storyboard:start", json=_body(characters=[{"name": "Mara"}]))

        assert resp.status_code == 400
        assert resp.json()["details"] == {"slots": [1]}

    def test_start_runs_to_done(self, client, provider):
        run_id = _start(client)

        resp = client.get(f"/v1/runs/{run_id}")

        assert resp.status_code == 200
        state = resp.json()
        assert state["status"] == "done"
        assert state["progress_percent"] == 100
        assert [s["scene_number"] for s in state["scenes"]] == [1, 2, 3]
        assert provider.image_calls == [1, 2, 3]

    def test_unknown_run(self, client):
        assert client.get("/v1/runs/nope").status_code == 404
        assert client.post("/v1/runs/nope:cancel").status_code == 404

    def test_cancel(self, client):
        run_id = _start(client, scene_count=1)

        resp = client.post(f"/v1/runs/{run_id}:cancel")

        assert resp.status_code == 200
        assert resp.json()["run_id"] == run_id

    def test_oldest_finished_runs_are_evicted(self, client, monkeypatch):
        monkeypatch.setattr(app_module, "MAX_RUNS", 2)
        first = _start(client, scene_count=1)
        app_module.RUNS[first].state.status = RunStatus.RENDERING_IMAGES
        second = _start(client, scene_count=1)
        third = _start(client, scene_count=1)

        assert list(app_module.RUNS) == [first, third]
        assert client.get(f"/v1/runs/{second}").status_code == 404

    def test_failed_stage_is_reported_on_the_run(self, client, provider):
        provider.scene_responder = lambda start, count: []

        run_id = _start(client)

        state = client.get(f"/v1/runs/{run_id}").json()
        assert state["status"] == "failed"
        assert "Script generation failed" in state["error"]


class TestScenes:

    def test_regenerate(self, client, provider):
        run_id = _start(client)
        before = client.get(f"/v1/runs/{run_id}").json()["scenes"]

        resp = client.post(f"/v1/runs/{run_id}/scenes/2:regenerate")

        assert resp.status_code == 200
        after = client.get(f"/v1/runs/{run_id}").json()["scenes"]
        assert after[1]["image_url"] == resp.json()["image_url"] != before[1]["image_url"]
        assert [after[0], after[2]] == [before[0], before[2]]

    def test_regenerate_unknown_scene(self, client):
        run_id = _start(client)

        assert client.post(f"/v1/runs/{run_id}/scenes/9:regenerate").status_code == 404

    def test_regenerate_while_active(self, client):
        run_id = _start(client)
        app_module.RUNS[run_id].state.status = RunStatus.RENDERING_IMAGES

        assert client.post(f"/v1/runs/{run_id}/scenes/1:regenerate").status_code == 409

    def test_image_download(self, client, png_bytes, png_base64):
        run_id = _start(client)
        app_module.RUNS[run_id].state.scenes[0].image_url = f"data:image/png;base64,{png_base64}"

        resp = client.get(f"/v1/runs/{run_id}/scenes/1/image")

        assert resp.status_code == 200
        assert resp.headers["content-type"] == "image/png"
        assert "MV_Scene_1.png" in resp.headers["content-disposition"]
        assert resp.content == png_bytes

    def test_export(self, client, png_base64):
        run_id = _start(client, scene_count=2)
        for scene in app_module.RUNS[run_id].state.scenes:
            scene.image_url = f"data:image/png;base64,{png_base64}"

        resp = client.post(f"/v1/runs/{run_id}:export")

        assert resp.status_code == 200
        assert resp.json()["files"] == ["MV_Scene_1.png", "MV_Scene_2.png", "storyboard.json"]

    def test_image_not_ready(self, client, provider):
        provider.failing_scenes = {1: 99}
        run_id = _start(client)

        assert client.get(f"/v1/runs/{run_id}/scenes/1/image").status_code == 409

    def test_metadata(self, client, provider):
        run_id = _start(client)

        resp = client.post(f"/v1/runs/{run_id}/metadata", json={"title": "Rooftops"})

        assert resp.status_code == 200
        assert resp.json()["hashtags"] == ["#musicvideo", "#storyboard"]
        assert "Rooftops" in provider.text_calls[-1][0]


class TestCast:

    def test_generate_cast(self, client):
        resp = client.post("/v1/cast:generate", json={"synopsis": "A band on tour", "count": 3})

        assert resp.status_code == 200
        assert [c["name"] for c in resp.json()] == ["Mara", "Jun", ""]

    def test_generate_cast_refused_while_run_active(self, client):
        run_id = _start(client)
        app_module.RUNS[run_id].state.status = RunStatus.WRITING_SCRIPT

        resp = client.post(f"/v1/cast:generate?run_id={run_id}", json={"synopsis": "A band", "count": 2})

        assert resp.status_code == 409

    def test_generate_cast_validation(self, client):
        resp = client.post("/v1/cast:generate", json={"synopsis": "A band", "count": 9})

        assert resp.status_code == 400


class TestHistory:

    def test_save_list_get_delete(self, client):
        run_id = _start(client)

        saved = client.post(f"/v1/runs/{run_id}:save", json={"title": "My storyboard"})

        assert saved.status_code == 200
        project_id = saved.json()["id"]
        listed = client.get("/v1/history").json()
        assert [p["id"] for p in listed] == [project_id]
        assert client.get(f"/v1/history/{project_id}").json()["title"] == "My storyboard"
        assert client.delete(f"/v1/history/{project_id}").status_code == 200
        assert client.get(f"/v1/history/{project_id}").status_code == 404
        assert client.delete(f"/v1/history/{project_id}").status_code == 404

    def test_save_before_any_scene(self, client, provider):
        provider.scene_responder = lambda start, count: []
        run_id = _start(client)

        assert client.post(f"/v1/runs/{run_id}:save").status_code == 400

    def test_import_and_clear(self, client):
        projects = [
            {"id": "a", "timestamp": 1, "title": "A"},
            {"id": "b", "timestamp": 2, "title": "B"},
        ]
        client.post("/v1/history:import", json=projects[1:])

        resp = client.post("/v1/history:import", json=[projects[0], {**projects[1], "title": "B2"}])

        assert [(p["id"], p["title"]) for p in resp.json()] == [("a", "A"), ("b", "B2")]
        assert client.delete("/v1/history").status_code == 200
        assert client.get("/v1/history").json() == []

    def test_load_resumes_missing_images(self, client, provider):
        provider.failing_scenes = {2: 3}
        run_id = _start(client)
        project_id = client.post(f"/v1/runs/{run_id}:save").json()["id"]
        provider.image_calls.clear()

        resp = client.post(f"/v1/history/{project_id}:load")

        assert resp.status_code == 200
        new_run = resp.json()["run_id"]
        assert new_run != run_id
        state = client.get(f"/v1/runs/{new_run}").json()
        assert state["status"] == "done"
        assert all(s["image_url"] for s in state["scenes"])
        assert provider.image_calls == [2]

    def test_load_complete_project_does_not_render(self, client, provider):
        run_id = _start(client)
        project_id = client.post(f"/v1/runs/{run_id}:save").json()["id"]
        provider.image_calls.clear()

        resp = client.post(f"/v1/history/{project_id}:load")

        assert resp.json()["status"] == "done"
        assert provider.image_calls == []

    def test_load_unknown_project(self, client):
        assert client.post("/v1/history/nope:load").status_code == 404
