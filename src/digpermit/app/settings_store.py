from __future__ import annotations

import json
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any


SETTINGS_PATH_ENV = "DIGPERMIT_SETTINGS"

DEFAULT_DATA_STORAGE_BACKEND = "local_sqlite"
SUPPORTED_DATA_STORAGE_BACKENDS: tuple[str, ...] = (
    DEFAULT_DATA_STORAGE_BACKEND,
    "local_json",
    "supabase",
)
DEFAULT_SUPABASE_SCHEMA = "public"
DEFAULT_SUPABASE_PERMITS_TABLE = "digpermit_permits"
DEFAULT_PERMIT_NUMBER_PREFIX = "EB-PT"
DEFAULT_MAX_PHOTOS = 10

# camelCase keys in settings.json
_KEY_DATA_FOLDER = "dataStorageFolder"
_KEY_BACKEND = "dataStorageBackend"
_KEY_NUMBER_PREFIX = "permitNumberPrefix"
_KEY_MAX_PHOTOS = "maxPhotosPerPermit"
_SUPABASE_KEYS = {
    "url": "supabaseUrl",
    "api_key": "supabaseApiKey",
    "schema": "supabaseSchema",
    "permits_table": "supabasePermitsTable",
}


def _app_root() -> Path:
    """Folder holding the frozen executable, or the checkout root."""
    if getattr(sys, "frozen", False):
        return Path(sys.executable).resolve().parent
    return Path(__file__).resolve().parents[3]


def _env_dir(name: str) -> Path | None:
    text = os.environ.get(name, "").strip()
    return Path(text) if text else None


def settings_path() -> Path:
    override = os.environ.get(SETTINGS_PATH_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    if os.name == "nt":
        candidates = [
            (_env_dir("APPDATA"), "config"),
            (_env_dir("LOCALAPPDATA"), "config"),
        ]
    else:
        home = _env_dir("HOME")
        candidates = [
            (_env_dir("XDG_CONFIG_HOME"), ""),
            (home / ".config" if home else None, ""),
        ]
    for base, subdir in candidates:
        if base is not None:
            folder = base / "digpermit"
            return (folder / subdir if subdir else folder) / "settings.json"
    return _app_root() / "config" / "settings.json"


@dataclass(frozen=True, slots=True)
class SupabaseSettings:
    url: str = ""
    api_key: str = ""
    schema: str = DEFAULT_SUPABASE_SCHEMA
    permits_table: str = DEFAULT_SUPABASE_PERMITS_TABLE

    @property
    def configured(self) -> bool:
        return bool(self.url and self.api_key)

    def to_mapping(self, *, redact_api_key: bool = False) -> dict[str, str]:
        return {
            "url": self.url,
            "api_key": "********" if redact_api_key and self.api_key else self.api_key,
            "schema": self.schema,
            "permits_table": self.permits_table,
        }


def load_settings() -> dict[str, Any]:
    """Return the saved settings; a missing or unreadable file reads as empty."""
    try:
        data = json.loads(settings_path().read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {}
    return data if isinstance(data, dict) else {}


def save_settings(settings: dict[str, Any]) -> None:
    path = settings_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    staging = path.with_name(f"{path.name}.tmp")
    staging.write_text(json.dumps(settings, indent=2), encoding="utf-8")
    os.replace(staging, path)


def _update_settings(changes: dict[str, Any]) -> None:
    settings = load_settings()
    settings.update(changes)
    save_settings(settings)


# --- data folder and backend -------------------------------------------------------


def default_data_storage_folder() -> Path:
    return (_app_root() / "data").resolve()


def normalize_data_storage_folder(value: str | Path | None) -> Path:
    text = str(value).strip() if value is not None else ""
    if not text:
        return default_data_storage_folder()
    candidate = Path(text).expanduser()
    if not candidate.is_absolute():
        candidate = _app_root() / candidate
    try:
        return candidate.resolve()
    except OSError:
        return candidate


def load_data_storage_folder() -> Path:
    value = load_settings().get(_KEY_DATA_FOLDER)
    return normalize_data_storage_folder(value if isinstance(value, str) else None)


def save_data_storage_folder(value: str | Path | None) -> Path:
    resolved = normalize_data_storage_folder(value)
    _update_settings({_KEY_DATA_FOLDER: str(resolved)})
    return resolved


def normalize_data_storage_backend(value: str | None) -> str:
    normalized = str(value or "").strip().lower()
    if normalized in SUPPORTED_DATA_STORAGE_BACKENDS:
        return normalized
    return DEFAULT_DATA_STORAGE_BACKEND


def load_data_storage_backend() -> str:
    value = load_settings().get(_KEY_BACKEND)
    return normalize_data_storage_backend(value if isinstance(value, str) else None)


def save_data_storage_backend(value: str) -> str:
    resolved = normalize_data_storage_backend(value)
    _update_settings({_KEY_BACKEND: resolved})
    return resolved


# --- supabase ----------------------------------------------------------------------


def normalize_supabase_settings(
    value: SupabaseSettings | dict[str, Any] | None,
) -> SupabaseSettings:
    if isinstance(value, SupabaseSettings):
        raw: dict[str, Any] = value.to_mapping()
    else:
        raw = dict(value or {})

    def text(field: str) -> str:
        return str(raw.get(field, "") or "").strip()

    return SupabaseSettings(
        url=text("url").rstrip("/"),
        api_key=text("api_key"),
        schema=text("schema") or DEFAULT_SUPABASE_SCHEMA,
        permits_table=text("permits_table") or DEFAULT_SUPABASE_PERMITS_TABLE,
    )


def load_supabase_settings() -> SupabaseSettings:
    settings = load_settings()
    return normalize_supabase_settings(
        {field: settings.get(key) for field, key in _SUPABASE_KEYS.items()}
    )


def save_supabase_settings(value: SupabaseSettings | dict[str, Any]) -> SupabaseSettings:
    normalized = normalize_supabase_settings(value)
    stored = normalized.to_mapping()
    _update_settings({key: stored[field] for field, key in _SUPABASE_KEYS.items()})
    return normalized


# --- permit numbering and photo limit ----------------------------------------------


def load_permit_number_prefix() -> str:
    value = load_settings().get(_KEY_NUMBER_PREFIX)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return DEFAULT_PERMIT_NUMBER_PREFIX


def save_permit_number_prefix(prefix: str) -> str:
    resolved = str(prefix or "").strip() or DEFAULT_PERMIT_NUMBER_PREFIX
    _update_settings({_KEY_NUMBER_PREFIX: resolved})
    return resolved


def _positive_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


def load_max_photos() -> int:
    return _positive_int(load_settings().get(_KEY_MAX_PHOTOS)) or DEFAULT_MAX_PHOTOS


def save_max_photos(limit: int) -> int:
    resolved = _positive_int(limit) or DEFAULT_MAX_PHOTOS
    _update_settings({_KEY_MAX_PHOTOS: resolved})
    return resolved
