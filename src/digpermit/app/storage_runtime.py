from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from digpermit.app.data_store import (
    BACKEND_LOCAL_SQLITE,
    BACKEND_SUPABASE,
    PermitStore,
    SupabaseDataStoreConfig,
    create_permit_store,
)
from digpermit.app.permit_service import PermitService
from digpermit.app.settings_store import (
    DEFAULT_SUPABASE_PERMITS_TABLE,
    DEFAULT_SUPABASE_SCHEMA,
    SupabaseSettings,
    load_data_storage_backend,
    load_data_storage_folder,
    load_max_photos,
    load_permit_number_prefix,
    load_supabase_settings,
    normalize_data_storage_backend,
    normalize_supabase_settings,
)
from digpermit.core import ActivityStream


@dataclass(frozen=True, slots=True)
class StorageRuntimeSelection:
    backend: str
    data_root: Path
    permit_store: PermitStore
    supabase_settings: SupabaseSettings
    warnings: tuple[str, ...] = ()


def build_storage_runtime(
    *,
    backend: str,
    data_root: Path | str,
    supabase_settings: SupabaseSettings | None = None,
) -> StorageRuntimeSelection:
    normalized_backend = normalize_data_storage_backend(backend)
    normalized_root = _normalize_path(Path(data_root))
    resolved_supabase = resolve_supabase_settings(supabase_settings)
    warnings: list[str] = []

    effective_backend = normalized_backend
    data_config: SupabaseDataStoreConfig | None = None
    if effective_backend == BACKEND_SUPABASE:
        if not resolved_supabase.configured:
            effective_backend = BACKEND_LOCAL_SQLITE
            warnings.append(
                "Supabase backend is selected, but URL/API key is missing. "
                "Falling back to local SQLite storage."
            )
        else:
            data_config = SupabaseDataStoreConfig.from_mapping(
                {
                    "url": resolved_supabase.url,
                    "api_key": resolved_supabase.api_key,
                    "schema": resolved_supabase.schema,
                    "table": resolved_supabase.permits_table,
                }
            )

    permit_store = create_permit_store(
        effective_backend,
        normalized_root,
        supabase_config=data_config,
    )
    return StorageRuntimeSelection(
        backend=effective_backend,
        data_root=normalized_root,
        permit_store=permit_store,
        supabase_settings=resolved_supabase,
        warnings=tuple(warnings),
    )


def resolve_supabase_settings(value: SupabaseSettings | None) -> SupabaseSettings:
    stored = normalize_supabase_settings(value)
    env = os.environ

    url = stored.url or _first_env(env, ("DIGPERMIT_SUPABASE_URL", "SUPABASE_URL"))
    api_key = stored.api_key or _first_env(
        env,
        (
            "DIGPERMIT_SUPABASE_API_KEY",
            "SUPABASE_SERVICE_ROLE_KEY",
            "SUPABASE_ANON_KEY",
        ),
    )
    schema = _first_env(env, ("DIGPERMIT_SUPABASE_SCHEMA",)) or stored.schema
    permits_table = _first_env(env, ("DIGPERMIT_SUPABASE_TABLE",)) or stored.permits_table

    return normalize_supabase_settings(
        {
            "url": url,
            "api_key": api_key,
            "schema": schema or DEFAULT_SUPABASE_SCHEMA,
            "permits_table": permits_table or DEFAULT_SUPABASE_PERMITS_TABLE,
        }
    )


def build_permit_service(
    *,
    backend: str | None = None,
    data_root: Path | str | None = None,
    supabase_settings: SupabaseSettings | None = None,
    stream: ActivityStream | None = None,
    number_prefix: str | None = None,
    max_photos: int | None = None,
) -> tuple[PermitService, StorageRuntimeSelection]:
    """Wire a ``PermitService`` from saved settings, with explicit arguments taking priority."""
    runtime = build_storage_runtime(
        backend=backend if backend is not None else load_data_storage_backend(),
        data_root=data_root if data_root is not None else load_data_storage_folder(),
        supabase_settings=(
            supabase_settings if supabase_settings is not None else load_supabase_settings()
        ),
    )
    service = PermitService(
        runtime.permit_store,
        stream=stream,
        number_prefix=number_prefix if number_prefix is not None else load_permit_number_prefix(),
        max_photos=max_photos if max_photos is not None else load_max_photos(),
    )
    return service, runtime


def _first_env(values: Mapping[str, str], keys: tuple[str, ...]) -> str:
    for key in keys:
        value = str(values.get(key, "") or "").strip()
        if value:
            return value
    return ""


def _normalize_path(path: Path) -> Path:
    expanded = path.expanduser()
    try:
        return expanded.resolve()
    except OSError:
        return expanded
