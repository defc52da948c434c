"""Persistence backends and their revision checks."""

import io
import json
import sqlite3
import urllib.error
import urllib.request
from pathlib import Path

import pytest

from digpermit.app import data_store
from digpermit.app.data_store import (
    LocalJsonPermitStore,
    LocalSqlitePermitStore,
    MemoryPermitStore,
    PermitRevisionConflictError,
    SupabaseDataStoreConfig,
    SupabasePermitStore,
    create_permit_store,
)
from permit_builders import make_active, make_draft


@pytest.fixture(params=["memory", "json", "sqlite"])
def store(request, tmp_path: Path):
    if request.param == "memory":
        return MemoryPermitStore()
    if request.param == "json":
        return LocalJsonPermitStore(tmp_path)
    return LocalSqlitePermitStore(tmp_path)


class TestPermitStoreContract:
    def test_empty_store(self, store) -> None:
        assert store.list() == []
        assert store.get("missing") is None
        assert store.has_saved_data() is False

    def test_put_then_get(self, store) -> None:
        permit = make_active()
        revision = store.put(permit)
        assert revision == 1
        loaded = store.get(permit.permit_id)
        assert loaded is not None
        assert loaded.revision == 1
        assert loaded.permit_number == permit.permit_number
        assert loaded.crew_members[0].name == "R. Lee"
        assert store.has_saved_data() is True

    def test_revision_advances(self, store) -> None:
        permit = make_draft()
        permit.revision = store.put(permit)
        permit.location = "Moved"
        assert store.put(permit) == 2
        assert store.get(permit.permit_id).location == "Moved"

    def test_stale_write_is_rejected(self, store) -> None:
        permit = make_draft()
        store.put(permit)
        first = store.get(permit.permit_id)
        second = store.get(permit.permit_id)
        first.location = "Writer one"
        store.put(first)
        second.location = "Writer two"
        with pytest.raises(PermitRevisionConflictError) as excinfo:
            store.put(second)
        assert excinfo.value.expected_revision == 1
        assert store.get(permit.permit_id).location == "Writer one"

    def test_duplicate_create_is_a_conflict(self, store) -> None:
        permit = make_draft()
        store.put(permit)
        with pytest.raises(PermitRevisionConflictError):
            store.put(permit)

    def test_list_returns_every_permit(self, store) -> None:
        store.put(make_draft(permit_number="EB-PT-2024-0001"))
        store.put(make_draft(permit_number="EB-PT-2024-0002"))
        numbers = sorted(permit.permit_number for permit in store.list())
        assert numbers == ["EB-PT-2024-0001", "EB-PT-2024-0002"]


class TestLocalJsonPermitStore:
    def test_writes_backup_copy(self, tmp_path: Path) -> None:
        store = LocalJsonPermitStore(tmp_path)
        permit = make_draft()
        permit.revision = store.put(permit)
        store.put(permit)
        assert store.backup_file_path.exists()
        backup = json.loads(store.backup_file_path.read_text(encoding="utf-8"))
        assert backup["data"]["permits"][0]["revision"] == 1

    def test_recovers_from_backup(self, tmp_path: Path) -> None:
        store = LocalJsonPermitStore(tmp_path)
        permit = make_draft()
        permit.revision = store.put(permit)
        store.put(permit)
        store.storage_file_path.write_text("{not json", encoding="utf-8")
        result = store.load()
        assert result.source == "backup"
        assert result.warning
        assert [p.permit_id for p in result.permits] == [permit.permit_id]

    def test_refuses_to_overwrite_unreadable_file(self, tmp_path: Path) -> None:
        store = LocalJsonPermitStore(tmp_path)
        store.storage_file_path.write_text("{not json", encoding="utf-8")
        with pytest.raises(RuntimeError):
            store.put(make_draft())


class TestLocalSqlitePermitStore:
    def test_one_row_per_permit(self, tmp_path: Path) -> None:
        store = LocalSqlitePermitStore(tmp_path)
        store.put(make_draft(permit_number="A"))
        store.put(make_draft(permit_number="B"))
        connection = sqlite3.connect(str(store.storage_file_path))
        try:
            rows = connection.execute(
                "select permit_number, status, revision from permits order by permit_number"
            ).fetchall()
        finally:
            connection.close()
        assert rows == [("A", "draft", 1), ("B", "draft", 1)]

    def test_imports_legacy_json(self, tmp_path: Path) -> None:
        legacy = LocalJsonPermitStore(tmp_path)
        permit = make_active()
        legacy.put(permit)
        store = LocalSqlitePermitStore(tmp_path)
        [loaded] = store.list()
        assert loaded.permit_id == permit.permit_id
        assert loaded.revision == 1
        assert "migrated" in store.last_warning


class TestFactory:
    def test_backends(self, tmp_path: Path) -> None:
        assert isinstance(create_permit_store("local_json", tmp_path), LocalJsonPermitStore)
        assert isinstance(create_permit_store("memory", tmp_path), MemoryPermitStore)
        assert isinstance(create_permit_store("unknown", tmp_path), LocalSqlitePermitStore)
        supabase = create_permit_store(
            "supabase",
            tmp_path,
            supabase_config=SupabaseDataStoreConfig(url="https://x.supabase.co", api_key="k"),
        )
        assert isinstance(supabase, SupabasePermitStore)

    def test_supabase_requires_config(self) -> None:
        store = SupabasePermitStore()
        with pytest.raises(RuntimeError):
            store.list()

    def test_supabase_config_from_mapping(self) -> None:
        config = SupabaseDataStoreConfig.from_mapping(
            {"url": "https://x.supabase.co/", "api_key": " k ", "timeout_seconds": "0.2"}
        )
        assert config.url == "https://x.supabase.co"
        assert config.api_key == "k"
        assert config.table == "digpermit_permits"
        assert config.timeout_seconds == 1.0


class _FakeResponse:
    def __init__(self, body: object, status: int = 200) -> None:
        self._body = json.dumps(body).encode("utf-8")
        self._status = status

    def __enter__(self) -> "_FakeResponse":
        return self

    def __exit__(self, *exc_info: object) -> None:
        return None

    def getcode(self) -> int:
        return self._status

    def read(self) -> bytes:
        return self._body


class _FakePostgrest:
    """Replays canned PostgREST replies and records each request."""

    def __init__(self, *replies: object) -> None:
        self._replies = list(replies)
        self.requests: list[urllib.request.Request] = []

    def __call__(self, request: urllib.request.Request, timeout: float = 0.0) -> _FakeResponse:
        self.requests.append(request)
        reply = self._replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return _FakeResponse(reply)


def _make_supabase_store() -> SupabasePermitStore:
    return SupabasePermitStore(
        config=SupabaseDataStoreConfig(url="https://x.supabase.co", api_key="k")
    )


def _http_error(code: int, reason: str, body: str) -> urllib.error.HTTPError:
    return urllib.error.HTTPError(
        "https://x.supabase.co/rest/v1/digpermit_permits",
        code,
        reason,
        None,
        io.BytesIO(body.encode("utf-8")),
    )


def _sent_json(request: urllib.request.Request) -> object:
    return json.loads(request.data.decode("utf-8"))


class TestSupabasePermitStore:
    def test_new_permit_is_inserted(self, monkeypatch: pytest.MonkeyPatch) -> None:
        fake = _FakePostgrest([{"revision": 1}])
        monkeypatch.setattr(data_store, "urlopen", fake)
        permit = make_draft()

        assert _make_supabase_store().put(permit) == 1

        [request] = fake.requests
        assert request.get_method() == "POST"
        assert request.full_url.endswith("/rest/v1/digpermit_permits?select=revision")
        [row] = _sent_json(request)
        assert row["permit_id"] == permit.permit_id
        assert row["revision"] == 1
        assert row["payload"]["revision"] == 1

    def test_update_is_filtered_on_loaded_revision(self, monkeypatch: pytest.MonkeyPatch) -> None:
        fake = _FakePostgrest([{"revision": 4}])
        monkeypatch.setattr(data_store, "urlopen", fake)
        permit = make_active()
        permit.revision = 3

        assert _make_supabase_store().put(permit) == 4

        [request] = fake.requests
        assert request.get_method() == "PATCH"
        assert f"permit_id=eq.{permit.permit_id}" in request.full_url
        assert "revision=eq.3" in request.full_url
        assert _sent_json(request)["revision"] == 4

    def test_empty_update_is_a_conflict(self, monkeypatch: pytest.MonkeyPatch) -> None:
        permit = make_active()
        permit.revision = 2
        current_row = {"permit_id": permit.permit_id, "revision": 5, "payload": permit.to_mapping()}
        fake = _FakePostgrest([], [current_row])
        monkeypatch.setattr(data_store, "urlopen", fake)

        with pytest.raises(PermitRevisionConflictError) as excinfo:
            _make_supabase_store().put(permit)

        assert excinfo.value.expected_revision == 2
        assert excinfo.value.actual_revision == 5
        assert [r.get_method() for r in fake.requests] == ["PATCH", "GET"]

    def test_duplicate_insert_is_a_conflict(self, monkeypatch: pytest.MonkeyPatch) -> None:
        permit = make_draft()
        current_row = {"permit_id": permit.permit_id, "revision": 1, "payload": permit.to_mapping()}
        fake = _FakePostgrest(
            _http_error(409, "Conflict", '{"code":"23505","message":"duplicate key value"}'),
            [current_row],
        )
        monkeypatch.setattr(data_store, "urlopen", fake)

        with pytest.raises(PermitRevisionConflictError) as excinfo:
            _make_supabase_store().put(permit)

        assert excinfo.value.expected_revision == 0
        assert excinfo.value.actual_revision == 1

    def test_other_http_errors_propagate(self, monkeypatch: pytest.MonkeyPatch) -> None:
        fake = _FakePostgrest(_http_error(500, "Internal Server Error", "boom"))
        monkeypatch.setattr(data_store, "urlopen", fake)

        with pytest.raises(RuntimeError) as excinfo:
            _make_supabase_store().put(make_draft())

        assert not isinstance(excinfo.value, PermitRevisionConflictError)

    def test_list_reads_row_revision(self, monkeypatch: pytest.MonkeyPatch) -> None:
        permit = make_active()
        row = {"permit_id": permit.permit_id, "revision": 7, "payload": permit.to_mapping()}
        fake = _FakePostgrest([row])
        monkeypatch.setattr(data_store, "urlopen", fake)

        [loaded] = _make_supabase_store().list()

        assert loaded.permit_id == permit.permit_id
        assert loaded.revision == 7
