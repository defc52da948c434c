from __future__ import annotations

import json
import os
import shutil
import sqlite3
import tempfile
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from time import perf_counter
from typing import Any, Protocol
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen
from uuid import uuid4

from digpermit.app.db_debug import db_debug, elapsed_ms
from digpermit.app.permit_models import PermitRecord


BACKEND_MEMORY = "memory"
BACKEND_LOCAL_SQLITE = "local_sqlite"
BACKEND_LOCAL_JSON = "local_json"
BACKEND_SUPABASE = "supabase"
DEFAULT_DATA_FILE_NAME = "digpermit_permits.json"
DEFAULT_SQLITE_FILE_NAME = "digpermit_permits.sqlite3"
_SCHEMA_VERSION = 1
_APP_ID = "digpermit"
_DEFAULT_SUPABASE_SCHEMA = "public"
_DEFAULT_SUPABASE_TABLE = "digpermit_permits"
_DEFAULT_SUPABASE_TIMEOUT_SECONDS = 8.0
_LOCAL_SQLITE_TABLE = "permits"


@dataclass(frozen=True, slots=True)
class DataLoadResult:
    permits: tuple[PermitRecord, ...] = field(default_factory=tuple)
    source: str = "primary"
    warning: str = ""


class PermitRevisionConflictError(RuntimeError):
    """Raised when a save loses a revision race against another writer."""

    def __init__(
        self,
        *,
        permit_id: str,
        expected_revision: int,
        actual_revision: int | None = None,
        message: str = "",
    ) -> None:
        detail = message.strip() if message.strip() else (
            f"Permit {permit_id} changed since it was loaded "
            f"(expected revision {max(0, int(expected_revision))}"
            + (f", found {actual_revision})" if actual_revision is not None else ")")
        )
        super().__init__(detail)
        self.permit_id = str(permit_id or "")
        self.expected_revision = max(0, int(expected_revision))
        self.actual_revision = actual_revision


@dataclass(frozen=True, slots=True)
class SupabaseDataStoreConfig:
    url: str = ""
    api_key: str = ""
    schema: str = _DEFAULT_SUPABASE_SCHEMA
    table: str = _DEFAULT_SUPABASE_TABLE
    timeout_seconds: float = _DEFAULT_SUPABASE_TIMEOUT_SECONDS

    @property
    def configured(self) -> bool:
        return bool(self.url and self.api_key)

    @classmethod
    def from_mapping(cls, value: dict[str, Any] | None) -> SupabaseDataStoreConfig:
        raw = value or {}
        url = str(raw.get("url", "") or "").strip().rstrip("/")
        api_key = str(raw.get("api_key", "") or "").strip()
        schema = str(raw.get("schema", "") or "").strip() or _DEFAULT_SUPABASE_SCHEMA
        table = (
            str(raw.get("table", "") or raw.get("permits_table", "") or "").strip()
            or _DEFAULT_SUPABASE_TABLE
        )
        timeout_raw = raw.get("timeout_seconds", _DEFAULT_SUPABASE_TIMEOUT_SECONDS)
        try:
            timeout_seconds = float(timeout_raw)
        except (TypeError, ValueError):
            timeout_seconds = _DEFAULT_SUPABASE_TIMEOUT_SECONDS
        timeout_seconds = max(1.0, timeout_seconds)
        return cls(
            url=url,
            api_key=api_key,
            schema=schema,
            table=table,
            timeout_seconds=timeout_seconds,
        )


class PermitStore(Protocol):
    """Per-permit persistence with optimistic revision checks.

    ``put`` treats ``permit.revision`` as the revision the caller loaded. The
    write succeeds only when the stored revision still matches, and returns the
    new revision. New permits carry revision 0.
    """

    backend: str

    def has_saved_data(self) -> bool:
        raise NotImplementedError

    def list(self) -> list[PermitRecord]:
        raise NotImplementedError

    def get(self, permit_id: str) -> PermitRecord | None:
        raise NotImplementedError

    def put(self, permit: PermitRecord) -> int:
        raise NotImplementedError


class MemoryPermitStore:
    backend = BACKEND_MEMORY

    def __init__(self, permits: list[PermitRecord] | None = None) -> None:
        self._rows: dict[str, dict[str, Any]] = {}
        for permit in permits or []:
            self._rows[permit.permit_id] = permit.to_mapping()

    def has_saved_data(self) -> bool:
        return bool(self._rows)

    def list(self) -> list[PermitRecord]:
        return [PermitRecord.from_mapping(deepcopy(row)) for row in self._rows.values()]

    def get(self, permit_id: str) -> PermitRecord | None:
        row = self._rows.get(str(permit_id or ""))
        if row is None:
            return None
        return PermitRecord.from_mapping(deepcopy(row))

    def put(self, permit: PermitRecord) -> int:
        stored = self._rows.get(permit.permit_id)
        actual = _coerce_non_negative_int(stored.get("revision"), default=0) if stored else 0
        _check_revision(permit, actual)
        payload = permit.to_mapping()
        payload["revision"] = actual + 1
        self._rows[permit.permit_id] = payload
        return actual + 1

    def raw_payload(self, permit_id: str) -> dict[str, Any] | None:
        row = self._rows.get(str(permit_id or ""))
        return deepcopy(row) if row is not None else None


class LocalJsonPermitStore:
    backend = BACKEND_LOCAL_JSON

    def __init__(
        self,
        data_root: Path | str,
        *,
        data_file_name: str = DEFAULT_DATA_FILE_NAME,
    ) -> None:
        self.data_root = _normalize_path(Path(data_root))
        self._data_file_name = data_file_name

    @property
    def storage_file_path(self) -> Path:
        return self.data_root / self._data_file_name

    @property
    def backup_file_path(self) -> Path:
        storage_file = self.storage_file_path
        return storage_file.with_suffix(f"{storage_file.suffix}.bak")

    def has_saved_data(self) -> bool:
        return self.storage_file_path.exists() and self.storage_file_path.is_file()

    def load(self) -> DataLoadResult:
        primary_path = self.storage_file_path
        if not primary_path.exists():
            return DataLoadResult(source="empty")

        try:
            permits = self._read_permits(primary_path)
            return DataLoadResult(permits=permits, source="primary")
        except (OSError, ValueError) as primary_error:
            backup_path = self.backup_file_path
            if backup_path.exists() and backup_path.is_file():
                try:
                    permits = self._read_permits(backup_path)
                    warning = "Primary data file could not be read; recovered from backup copy."
                    db_debug("json.load.backup", path=str(backup_path), error=str(primary_error))
                    return DataLoadResult(permits=permits, source="backup", warning=warning)
                except (OSError, ValueError) as backup_error:
                    warning = (
                        "Primary and backup data files could not be read. "
                        f"Primary error: {primary_error}. Backup error: {backup_error}."
                    )
                    return DataLoadResult(source="empty", warning=warning)
            warning = f"Primary data file could not be read: {primary_error}."
            return DataLoadResult(source="empty", warning=warning)

    def list(self) -> list[PermitRecord]:
        return list(self.load().permits)

    def get(self, permit_id: str) -> PermitRecord | None:
        key = str(permit_id or "")
        for permit in self.load().permits:
            if permit.permit_id == key:
                return permit
        return None

    def put(self, permit: PermitRecord) -> int:
        result = self.load()
        if result.source == "empty" and result.warning:
            # Refuse to overwrite a file we could not parse.
            raise RuntimeError(result.warning)
        rows = [entry.to_mapping() for entry in result.permits]
        actual = 0
        index = -1
        for position, row in enumerate(rows):
            if row.get("permit_id") == permit.permit_id:
                actual = _coerce_non_negative_int(row.get("revision"), default=0)
                index = position
                break
        _check_revision(permit, actual)

        payload = permit.to_mapping()
        payload["revision"] = actual + 1
        if index >= 0:
            rows[index] = payload
        else:
            rows.append(payload)
        self.data_root.mkdir(parents=True, exist_ok=True)
        self._write_atomic_json(_build_storage_payload(rows, backend=self.backend))
        db_debug(
            "json.save",
            path=str(self.storage_file_path),
            permit_id=permit.permit_id,
            revision=actual + 1,
        )
        return actual + 1

    def _read_permits(self, path: Path) -> tuple[PermitRecord, ...]:
        raw = json.loads(path.read_text(encoding="utf-8"))
        return tuple(
            PermitRecord.from_mapping(row) for row in _permit_rows_from_storage_payload(raw)
        )

    def _write_atomic_json(self, payload: dict[str, object]) -> None:
        target_path = self.storage_file_path
        backup_path = self.backup_file_path

        if target_path.exists():
            try:
                shutil.copy2(target_path, backup_path)
            except OSError as exc:
                db_debug("json.backup.error", path=str(backup_path), error=str(exc))

        fd, temp_path = tempfile.mkstemp(
            prefix=f"{target_path.stem}.",
            suffix=".tmp",
            dir=str(self.data_root),
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as handle:
                json.dump(payload, handle, indent=2, ensure_ascii=False)
                handle.write("\n")
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_path, target_path)
        except BaseException:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise


class LocalSqlitePermitStore:
    backend = BACKEND_LOCAL_SQLITE

    def __init__(
        self,
        data_root: Path | str,
        *,
        sqlite_file_name: str = DEFAULT_SQLITE_FILE_NAME,
        legacy_json_file_name: str = DEFAULT_DATA_FILE_NAME,
    ) -> None:
        self.data_root = _normalize_path(Path(data_root))
        self._sqlite_file_name = str(sqlite_file_name or DEFAULT_SQLITE_FILE_NAME).strip()
        if not self._sqlite_file_name:
            self._sqlite_file_name = DEFAULT_SQLITE_FILE_NAME
        self._legacy_json_store = LocalJsonPermitStore(
            self.data_root,
            data_file_name=legacy_json_file_name,
        )
        self._migration_checked = False
        self.last_warning = ""

    @property
    def storage_file_path(self) -> Path:
        return self.data_root / self._sqlite_file_name

    @property
    def legacy_json_file_path(self) -> Path:
        return self._legacy_json_store.storage_file_path

    def has_saved_data(self) -> bool:
        sqlite_path = self.storage_file_path
        if sqlite_path.exists() and sqlite_path.is_file():
            with self._connect() as connection:
                self._ensure_schema(connection)
                row = connection.execute(
                    f"select 1 from {_LOCAL_SQLITE_TABLE} limit 1"
                ).fetchone()
            if row is not None:
                return True
        return self._legacy_json_store.has_saved_data()

    def list(self) -> list[PermitRecord]:
        started_at = perf_counter()
        self._migrate_legacy_json()
        with self._connect() as connection:
            self._ensure_schema(connection)
            rows = connection.execute(
                f"select permit_id, payload_json from {_LOCAL_SQLITE_TABLE} "
                "order by permit_number, permit_id"
            ).fetchall()
        permits = [
            permit
            for permit in (self._decode_row(permit_id, payload) for permit_id, payload in rows)
            if permit is not None
        ]
        db_debug(
            "sqlite.list",
            path=str(self.storage_file_path),
            count=len(permits),
            duration_ms=elapsed_ms(started_at),
        )
        return permits

    def get(self, permit_id: str) -> PermitRecord | None:
        self._migrate_legacy_json()
        with self._connect() as connection:
            self._ensure_schema(connection)
            row = connection.execute(
                f"select permit_id, payload_json from {_LOCAL_SQLITE_TABLE} "
                "where permit_id = ? limit 1",
                (str(permit_id or ""),),
            ).fetchone()
        if row is None:
            return None
        return self._decode_row(row[0], row[1])

    def put(self, permit: PermitRecord) -> int:
        started_at = perf_counter()
        self._migrate_legacy_json()
        try:
            with self._connect() as connection:
                self._ensure_schema(connection)
                revision = self._put_in_transaction(connection, permit)
        except sqlite3.Error as exc:
            db_debug(
                "sqlite.save.error",
                path=str(self.storage_file_path),
                permit_id=permit.permit_id,
                error=str(exc),
            )
            raise
        db_debug(
            "sqlite.save",
            path=str(self.storage_file_path),
            permit_id=permit.permit_id,
            revision=revision,
            duration_ms=elapsed_ms(started_at),
        )
        return revision

    def _put_in_transaction(self, connection: sqlite3.Connection, permit: PermitRecord) -> int:
        connection.execute("begin immediate")
        try:
            row = connection.execute(
                f"select revision from {_LOCAL_SQLITE_TABLE} where permit_id = ?",
                (permit.permit_id,),
            ).fetchone()
            actual = _coerce_non_negative_int(row[0], default=0) if row is not None else 0
            _check_revision(permit, actual)

            payload = permit.to_mapping()
            payload["revision"] = actual + 1
            payload_json = json.dumps(payload, ensure_ascii=False)
            saved_at_utc = datetime.now(timezone.utc).isoformat(timespec="seconds")
            if row is None:
                connection.execute(
                    (
                        f"insert into {_LOCAL_SQLITE_TABLE} "
                        "(permit_id, permit_number, status, revision, saved_at_utc, payload_json) "
                        "values (?, ?, ?, ?, ?, ?)"
                    ),
                    (
                        permit.permit_id,
                        payload["permit_number"],
                        payload["status"],
                        actual + 1,
                        saved_at_utc,
                        payload_json,
                    ),
                )
            else:
                cursor = connection.execute(
                    (
                        f"update {_LOCAL_SQLITE_TABLE} set "
                        "permit_number = ?, status = ?, revision = ?, "
                        "saved_at_utc = ?, payload_json = ? "
                        "where permit_id = ? and revision = ?"
                    ),
                    (
                        payload["permit_number"],
                        payload["status"],
                        actual + 1,
                        saved_at_utc,
                        payload_json,
                        permit.permit_id,
                        actual,
                    ),
                )
                if cursor.rowcount != 1:
                    raise PermitRevisionConflictError(
                        permit_id=permit.permit_id,
                        expected_revision=permit.revision,
                    )
        except BaseException:
            connection.rollback()
            raise
        connection.commit()
        return actual + 1

    def _migrate_legacy_json(self) -> None:
        if self._migration_checked:
            return
        self._migration_checked = True
        if not self._legacy_json_store.has_saved_data():
            return
        with self._connect() as connection:
            self._ensure_schema(connection)
            existing = connection.execute(
                f"select 1 from {_LOCAL_SQLITE_TABLE} limit 1"
            ).fetchone()
        if existing is not None:
            return

        legacy_result = self._legacy_json_store.load()
        if legacy_result.source == "empty":
            self.last_warning = legacy_result.warning
            return
        imported = 0
        with self._connect() as connection:
            self._ensure_schema(connection)
            for permit in legacy_result.permits:
                legacy = permit.clone()
                legacy.revision = 0
                self._put_in_transaction(connection, legacy)
                imported += 1
        self.last_warning = " ".join(
            part
            for part in (
                "Loaded permits from legacy JSON and migrated them to local SQLite.",
                legacy_result.warning.strip(),
            )
            if part
        )
        db_debug(
            "sqlite.migrate_json",
            json_path=str(self.legacy_json_file_path),
            sqlite_path=str(self.storage_file_path),
            source=legacy_result.source,
            count=imported,
        )

    def _decode_row(self, permit_id: object, payload_json: object) -> PermitRecord | None:
        try:
            payload = json.loads(str(payload_json))
        except ValueError as exc:
            db_debug(
                "sqlite.load.payload_invalid",
                path=str(self.storage_file_path),
                permit_id=str(permit_id),
                error=str(exc),
            )
            return None
        return PermitRecord.from_mapping(payload)

    def _connect(self) -> sqlite3.Connection:
        self.data_root.mkdir(parents=True, exist_ok=True)
        return sqlite3.connect(
            str(self.storage_file_path),
            timeout=4.0,
            isolation_level=None,
        )

    def _ensure_schema(self, connection: sqlite3.Connection) -> None:
        connection.execute(
            f"""
            create table if not exists {_LOCAL_SQLITE_TABLE} (
                permit_id text primary key,
                permit_number text not null,
                status text not null,
                revision integer not null default 0,
                saved_at_utc text not null,
                payload_json text not null
            )
            """
        )


class SupabasePermitStore:
    backend = BACKEND_SUPABASE

    def __init__(self, *, config: SupabaseDataStoreConfig | None = None) -> None:
        self._config = config or SupabaseDataStoreConfig()
        self._client_id = f"digpermit-{uuid4().hex[:12]}"

    @property
    def client_id(self) -> str:
        return self._client_id

    def has_saved_data(self) -> bool:
        rows = self._request_json(
            method="GET",
            path=self._table_path(),
            query="?select=permit_id&limit=1",
            expect_json=True,
        )
        return isinstance(rows, list) and bool(rows)

    def list(self) -> list[PermitRecord]:
        rows = self._request_json(
            method="GET",
            path=self._table_path(),
            query="?select=permit_id,revision,payload&order=permit_number.asc",
            expect_json=True,
        )
        if not isinstance(rows, list):
            return []
        return [
            permit for permit in (self._decode_row(row) for row in rows) if permit is not None
        ]

    def get(self, permit_id: str) -> PermitRecord | None:
        row = self._fetch_row(permit_id)
        if row is None:
            return None
        return self._decode_row(row)

    def put(self, permit: PermitRecord) -> int:
        config = self._require_config()
        now_iso = datetime.now(timezone.utc).isoformat(timespec="seconds")
        expected_revision = max(0, int(permit.revision))
        payload = permit.to_mapping()
        payload["revision"] = expected_revision + 1
        started_at = perf_counter()

        row_values = {
            "permit_number": payload["permit_number"],
            "status": payload["status"],
            "schema_version": _SCHEMA_VERSION,
            "saved_at_utc": now_iso,
            "updated_by": self._client_id,
            "revision": expected_revision + 1,
            "payload": payload,
        }

        if expected_revision == 0:
            try:
                inserted = self._request_json(
                    method="POST",
                    path=self._table_path(),
                    query="?select=revision",
                    payload=[{"permit_id": permit.permit_id, **row_values}],
                    prefer="return=representation",
                    expect_json=True,
                )
            except RuntimeError as exc:
                if not _is_postgrest_conflict_error(exc):
                    db_debug(
                        "supabase.save.error",
                        table=config.table,
                        mode="insert",
                        permit_id=permit.permit_id,
                        error=str(exc),
                    )
                    raise
                existing = self._fetch_row(permit.permit_id)
                raise PermitRevisionConflictError(
                    permit_id=permit.permit_id,
                    expected_revision=0,
                    actual_revision=(
                        _coerce_non_negative_int(existing.get("revision"), default=0)
                        if existing is not None
                        else None
                    ),
                ) from exc
            revision = _extract_saved_revision(inserted, default=1)
            db_debug(
                "supabase.save",
                table=config.table,
                mode="insert",
                permit_id=permit.permit_id,
                revision=revision,
                duration_ms=elapsed_ms(started_at),
            )
            return revision

        permit_key = quote(permit.permit_id, safe="_-")
        patched = self._request_json(
            method="PATCH",
            path=self._table_path(),
            query=(
                "?select=revision"
                f"&permit_id=eq.{permit_key}"
                f"&revision=eq.{expected_revision}"
            ),
            payload=row_values,
            prefer="return=representation",
            expect_json=True,
        )
        if not isinstance(patched, list) or not patched:
            fresh_row = self._fetch_row(permit.permit_id)
            actual = (
                _coerce_non_negative_int(fresh_row.get("revision"), default=0)
                if fresh_row is not None
                else None
            )
            db_debug(
                "supabase.save.conflict",
                table=config.table,
                permit_id=permit.permit_id,
                expected_revision=expected_revision,
                actual_revision=actual,
            )
            raise PermitRevisionConflictError(
                permit_id=permit.permit_id,
                expected_revision=expected_revision,
                actual_revision=actual,
            )

        revision = _extract_saved_revision(patched, default=expected_revision + 1)
        db_debug(
            "supabase.save",
            table=config.table,
            mode="update",
            permit_id=permit.permit_id,
            expected_revision=expected_revision,
            revision=revision,
            duration_ms=elapsed_ms(started_at),
        )
        return revision

    def _require_config(self) -> SupabaseDataStoreConfig:
        if self._config.configured:
            return self._config
        raise RuntimeError(
            "Supabase backend is selected, but Supabase URL or API key is missing. "
            "Set DIGPERMIT_SUPABASE_URL and DIGPERMIT_SUPABASE_API_KEY or save them in settings."
        )

    def _table_path(self) -> str:
        return f"/rest/v1/{quote(self._require_config().table, safe='_')}"

    def _fetch_row(self, permit_id: str) -> dict[str, Any] | None:
        permit_key = quote(str(permit_id or ""), safe="_-")
        rows = self._request_json(
            method="GET",
            path=self._table_path(),
            query=f"?select=permit_id,revision,payload&permit_id=eq.{permit_key}&limit=1",
            expect_json=True,
        )
        if not isinstance(rows, list) or not rows:
            return None
        first = rows[0]
        return first if isinstance(first, dict) else None

    def _decode_row(self, row: object) -> PermitRecord | None:
        if not isinstance(row, dict):
            return None
        payload = row.get("payload")
        if not isinstance(payload, dict):
            db_debug(
                "supabase.load.payload_missing",
                permit_id=str(row.get("permit_id", "")),
            )
            return None
        permit = PermitRecord.from_mapping(payload)
        permit.revision = _coerce_non_negative_int(row.get("revision"), default=permit.revision)
        return permit

    def _request_json(
        self,
        *,
        method: str,
        path: str,
        query: str = "",
        payload: Any | None = None,
        prefer: str = "",
        expect_json: bool,
    ) -> Any:
        config = self._require_config()
        request_url = f"{config.url.rstrip('/')}{path}{query}"
        request_data: bytes | None = None
        if payload is not None:
            request_data = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        db_debug(
            "supabase.request",
            method=method.upper(),
            path=path,
            query_present=bool(query),
            payload_bytes=len(request_data) if request_data is not None else 0,
        )
        headers = {
            "apikey": config.api_key,
            "Authorization": f"Bearer {config.api_key}",
        }
        if config.schema:
            headers["Accept-Profile"] = config.schema
            headers["Content-Profile"] = config.schema
        if payload is not None:
            headers["Content-Type"] = "application/json"
        if prefer:
            headers["Prefer"] = prefer

        request = Request(request_url, data=request_data, headers=headers, method=method.upper())

        try:
            with urlopen(request, timeout=config.timeout_seconds) as response:
                status_code = int(response.getcode() or 0)
                body = response.read()
            db_debug(
                "supabase.response",
                method=method.upper(),
                path=path,
                status=status_code,
                body_bytes=len(body),
            )
        except HTTPError as exc:
            try:
                error_body = exc.read().decode("utf-8", errors="replace").strip()
            except OSError:
                error_body = ""
            detail = f"{exc.code} {exc.reason}"
            if error_body:
                detail = f"{detail}: {error_body}"
            db_debug(
                "supabase.request.error",
                method=method.upper(),
                path=path,
                code=int(exc.code),
                reason=str(exc.reason),
            )
            raise RuntimeError(f"Supabase request failed for {path}: {detail}") from exc
        except URLError as exc:
            db_debug(
                "supabase.request.error",
                method=method.upper(),
                path=path,
                error=str(exc),
            )
            raise RuntimeError(f"Supabase request failed for {path}: {exc}") from exc

        if not expect_json:
            return body
        if not body:
            return None
        try:
            return json.loads(body.decode("utf-8"))
        except ValueError as exc:
            db_debug(
                "supabase.response.parse_error",
                method=method.upper(),
                path=path,
                body_bytes=len(body),
                error=str(exc),
            )
            raise RuntimeError(
                f"Supabase returned non-JSON payload for {path} ({len(body)} bytes)."
            ) from exc


def _check_revision(permit: PermitRecord, actual: int) -> None:
    expected = max(0, int(permit.revision))
    if expected != actual:
        db_debug(
            "store.conflict",
            permit_id=permit.permit_id,
            expected_revision=expected,
            actual_revision=actual,
        )
        raise PermitRevisionConflictError(
            permit_id=permit.permit_id,
            expected_revision=expected,
            actual_revision=actual,
        )


def _permit_rows_from_storage_payload(raw: object) -> list[dict[str, Any]]:
    if not isinstance(raw, dict):
        raise ValueError("Storage payload must be a JSON object.")
    data_payload = raw.get("data")
    if not isinstance(data_payload, dict):
        data_payload = raw
    permits = data_payload.get("permits")
    if not isinstance(permits, list):
        raise ValueError("Storage payload has no permits list.")
    return [row for row in permits if isinstance(row, dict)]


def _build_storage_payload(
    rows: list[dict[str, Any]],
    *,
    backend: str,
) -> dict[str, object]:
    return {
        "app": _APP_ID,
        "schemaVersion": _SCHEMA_VERSION,
        "backend": str(backend or "").strip(),
        "savedAtUtc": datetime.now(timezone.utc).isoformat(timespec="seconds"),
        "data": {"permits": rows},
    }


def _coerce_non_negative_int(value: object, *, default: int) -> int:
    try:
        parsed = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return max(0, int(default))
    return max(0, parsed)


def _extract_saved_revision(value: object, *, default: int) -> int:
    if isinstance(value, list) and value:
        first = value[0]
        if isinstance(first, dict):
            return _coerce_non_negative_int(first.get("revision"), default=default)
    return _coerce_non_negative_int(None, default=default)


def _is_postgrest_conflict_error(exc: RuntimeError) -> bool:
    text = str(exc).casefold()
    if "409" in text or "conflict" in text:
        return True
    # PostgREST can report unique violations as a 400.
    return "duplicate key value" in text or "23505" in text


def create_permit_store(
    backend: str,
    data_root: Path | str,
    *,
    supabase_config: SupabaseDataStoreConfig | None = None,
) -> PermitStore:
    normalized_backend = str(backend or "").strip().lower()
    if normalized_backend == BACKEND_SUPABASE:
        return SupabasePermitStore(config=supabase_config)
    if normalized_backend == BACKEND_LOCAL_JSON:
        return LocalJsonPermitStore(data_root)
    if normalized_backend == BACKEND_MEMORY:
        return MemoryPermitStore()
    return LocalSqlitePermitStore(data_root)


def _normalize_path(path: Path) -> Path:
    expanded = path.expanduser()
    try:
        return expanded.resolve()
    except OSError:
        return expanded
