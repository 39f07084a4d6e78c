"""Tests for project history snapshots and stores."""

import json
import httpx
import pytest

from storyboard import history as history_module
from storyboard.history import (
    FileHistoryStore, KVHistoryStore, merge_projects, snapshot_from_state, state_from_snapshot,
)
from storyboard.models import (
    CharacterSlot, ErrorKind, ProjectSnapshot, RenderedScene, RunState, RunStatus,
)
from storyboard.settings import HISTORY_KEY


def _project(project_id: str, title: str = "") -> ProjectSnapshot:
    return ProjectSnapshot(id=project_id, timestamp=1700000000000, title=title or project_id)


def _kv_transport(storage: dict) -> httpx.MockTransport:
    """Minimal Vercel KV REST API: POST /get [key], POST /set [key, value]."""

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer test-token"
        command = json.loads(request.content)
        if request.url.path.endswith("/get"):
            return httpx.Response(200, json={"result": storage.get(command[0])})
        if request.url.path.endswith("/set"):
            storage[command[0]] = command[1]
            return httpx.Response(200, json={"result": "OK"})
        return httpx.Response(404)

    return httpx.MockTransport(handler)


class TestSnapshots:

    def test_snapshot_shape(self, make_request):
        req = make_request(scene_count=2)
        state = RunState(
            run_id="r1",
            status=RunStatus.DONE,
            characters=[CharacterSlot(name="Mara", description="Red coat")],
            scenes=[
                RenderedScene(scene_number=1, action="Run", full_prompt="p1", image_url="https://a/1.png"),
                RenderedScene(scene_number=2, action="Jump", full_prompt="p2", is_loading=True,
                              last_error=ErrorKind.EXHAUSTED_RETRIES),
            ],
        )

        snapshot = snapshot_from_state(state, req)

        assert snapshot.tool == "story-generated-mv"
        assert snapshot.title == "Neon Rooftops"
        assert snapshot.timestamp > 1700000000000
        assert snapshot.data["synopsis"] == req.synopsis
        assert snapshot.data["scenes"][1]["is_loading"] is False
        assert snapshot.data["scenes"][1]["last_error"] == "exhausted_retries"
        json.dumps(snapshot.model_dump())

    def test_state_from_snapshot_restores_partial_run(self, make_request):
        req = make_request(scene_count=2, style="Anime", aspect_ratio="9:16")
        state = RunState(
            run_id="r1",
            scenes=[
                RenderedScene(scene_number=1, action="Run", full_prompt="p1", image_url="https://a/1.png"),
                RenderedScene(scene_number=2, action="Jump", full_prompt="p2"),
            ],
        )

        restored_req, restored = state_from_snapshot(snapshot_from_state(state, req), run_id="r2")

        assert restored.run_id == "r2"
        assert restored.status == RunStatus.IDLE
        assert [s.image_url for s in restored.scenes] == ["https://a/1.png", None]
        assert restored_req.style == "Anime"
        assert restored_req.aspect_ratio == "9:16"
        assert [c.name for c in restored_req.characters] == ["Mara", "Jun"]

    def test_missing_fields_get_defaults(self):
        req, state = state_from_snapshot(_project("bare"))

        assert req.synopsis == ""
        assert req.scene_count == 12
        assert state.scenes == []
        assert state.status == RunStatus.IDLE

    def test_scene_error_kinds_load(self):
        project = _project("p")
        project.data = {"scenes": [
            {"scene_number": 1, "full_prompt": "p1", "last_error": "parse_error"},
            {"scene_number": 2, "full_prompt": "p2", "last_error": "provider_error"},
        ]}

        _, state = state_from_snapshot(project)

        assert [s.last_error for s in state.scenes] == [ErrorKind.PARSE, ErrorKind.PROVIDER]


class TestMerge:

    def test_incoming_first_and_deduped(self):
        existing = [_project("a", "old a"), _project("b")]
        incoming = [_project("c"), _project("a", "new a")]

        merged = merge_projects(incoming, existing)

        assert [p.id for p in merged] == ["c", "a", "b"]
        assert merged[1].title == "new a"


class TestFileHistoryStore:

    @pytest.mark.asyncio
    async def test_save_prepends(self, tmp_path):
        store = FileHistoryStore(str(tmp_path / "history.json"))

        await store.save_project(_project("a"))
        await store.save_project(_project("b"))

        assert [p.id for p in await store.list_projects()] == ["b", "a"]
        raw = json.loads((tmp_path / "history.json").read_text())
        assert [p["id"] for p in raw[HISTORY_KEY]] == ["b", "a"]

    @pytest.mark.asyncio
    async def test_get_delete_clear(self, tmp_path):
        store = FileHistoryStore(str(tmp_path / "history.json"))
        await store.save_project(_project("a"))
        await store.save_project(_project("b"))

        assert (await store.get_project("a")).id == "a"
        assert await store.get_project("zzz") is None
        assert await store.delete_project("a") is True
        assert await store.delete_project("a") is False
        assert [p.id for p in await store.list_projects()] == ["b"]

        await store.clear()
        assert await store.list_projects() == []

    @pytest.mark.asyncio
    async def test_import_merges(self, tmp_path):
        store = FileHistoryStore(str(tmp_path / "history.json"))
        await store.save_project(_project("a"))

        merged = await store.import_projects([_project("b"), _project("a")])

        assert [p.id for p in merged] == ["b", "a"]
        assert [p.id for p in await store.list_projects()] == ["b", "a"]

    @pytest.mark.asyncio
    async def test_missing_or_corrupt_file_reads_empty(self, tmp_path):
        path = tmp_path / "history.json"
        store = FileHistoryStore(str(path))
        assert await store.list_projects() == []

        path.write_text("{not json")
        assert await store.list_projects() == []

    @pytest.mark.asyncio
    async def test_failed_write_keeps_previous_history(self, tmp_path, monkeypatch):
        path = tmp_path / "history.json"
        store = FileHistoryStore(str(path))
        await store.save_project(_project("a"))

        def broken_dump(*args, **kwargs):
            raise OSError("disk full")
        monkeypatch.setattr(history_module.json, "dump", broken_dump)

        assert await store.save_project(_project("b")) is False
        monkeypatch.undo()
        assert [p.id for p in await store.list_projects()] == ["a"]
        assert [f.name for f in tmp_path.iterdir()] == ["history.json"]

    @pytest.mark.asyncio
    async def test_malformed_entries_are_skipped(self, tmp_path):
        path = tmp_path / "history.json"
        path.write_text(json.dumps({HISTORY_KEY: [{"title": "no id"}, _project("ok").model_dump()]}))

        assert [p.id for p in await FileHistoryStore(str(path)).list_projects()] == ["ok"]


class TestKVHistoryStore:

    @pytest.mark.asyncio
    async def test_round_trip_through_kv(self):
        storage = {}
        store = KVHistoryStore("https://kv.test/", "test-token", transport=_kv_transport(storage))

        assert await store.save_project(_project("a")) is True
        await store.save_project(_project("b"))

        assert [p.id for p in await store.list_projects()] == ["b", "a"]
        assert [p["id"] for p in json.loads(storage[HISTORY_KEY])] == ["b", "a"]

    @pytest.mark.asyncio
    async def test_kv_errors_read_as_empty(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(500))
        store = KVHistoryStore("https://kv.test", "test-token", transport=transport)

        assert await store.list_projects() == []
        assert await store.save_project(_project("a")) is False
