"""Global configuration for the music scheduler."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable

DEFAULTS: dict[str, Any] = {
    "invitation_expiry_days": 7,
    "recurrence_max_instances": 104,
    "recurrence_extension_days": 90,
    "series_extension_interval_hours": 24,
    "invitation_sweep_interval_hours": 6,
    "sqlite_vacuum_hours": 12,
    "allow_multi_role": False,
    "forbid_duplicate_roles": False,
    "dispatch_policy": "strict",
    "dispatch_timeout_seconds": 10,
    "resend_api_key": "",
    "email_from": "Church Music Scheduler <noreply@example.org>",
    "app_base_url": "http://localhost:8000",
    "temporary_password_length": 8,
    "password_hash_rounds": 12,
    "default_timezone_offset_minutes": 0,
    "enable_scheduler": True,
    "seed_musicians": 12,
    "seed_groups": 2,
    "seed_events": 3,
    "app_host": "0.0.0.0",
    "app_port": 8000,
}

TYPE_CASTERS: dict[str, Callable[[Any], Any]] = {
    "invitation_expiry_days": int,
    "recurrence_max_instances": int,
    "recurrence_extension_days": int,
    "series_extension_interval_hours": int,
    "invitation_sweep_interval_hours": int,
    "sqlite_vacuum_hours": int,
    "allow_multi_role": bool,
    "forbid_duplicate_roles": bool,
    "dispatch_policy": str,
    "dispatch_timeout_seconds": float,
    "resend_api_key": str,
    "email_from": str,
    "app_base_url": str,
    "temporary_password_length": int,
    "password_hash_rounds": int,
    "default_timezone_offset_minutes": int,
    "enable_scheduler": bool,
    "seed_musicians": int,
    "seed_groups": int,
    "seed_events": int,
    "app_host": str,
    "app_port": int,
}

# Never echoed back by ``settings_as_dict``.
SECRET_KEYS = {"resend_api_key"}


@dataclass(frozen=True)
class Settings:
    base_dir: Path
    data_dir: Path
    database_path: Path
    invitation_expiry_days: int
    recurrence_max_instances: int
    recurrence_extension_days: int
    series_extension_interval_hours: int
    invitation_sweep_interval_hours: int
    sqlite_vacuum_hours: int
    allow_multi_role: bool
    forbid_duplicate_roles: bool
    dispatch_policy: str
    dispatch_timeout_seconds: float
    resend_api_key: str
    email_from: str
    app_base_url: str
    temporary_password_length: int
    password_hash_rounds: int
    default_timezone_offset_minutes: int
    enable_scheduler: bool
    seed_musicians: int
    seed_groups: int
    seed_events: int
    app_host: str
    app_port: int
    config_path: Path

    @property
    def invitation_ttl(self) -> timedelta:
        return timedelta(days=self.invitation_expiry_days)

    @property
    def extension_horizon(self) -> timedelta:
        return timedelta(days=self.recurrence_extension_days)

    @property
    def vacuum_interval(self) -> timedelta:
        return timedelta(hours=self.sqlite_vacuum_hours)


def _boolify(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    raise ValueError(f"Cannot parse boolean value from {value!r}")


def _cast_value(key: str, value: Any) -> Any:
    if key not in TYPE_CASTERS:
        return value
    caster = TYPE_CASTERS[key]
    if caster is bool:
        return _boolify(value)
    return caster(value)


def _load_toml_config(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        return {}
    with config_path.open("rb") as handle:
        return tomllib.load(handle)


def _config_layered_value(key: str, *, toml_config: dict[str, Any]) -> Any:
    env_key = f"MUSICSCHEDULER_{key.upper()}"
    if env_key in os.environ:
        return _cast_value(key, os.environ[env_key])
    if key in toml_config:
        return _cast_value(key, toml_config[key])
    return DEFAULTS[key]


def _resolve_paths(
    *,
    base_dir: Path,
    data_dir: str | Path | None,
    database_path: str | Path | None,
):
    resolved_base = Path(base_dir)
    resolved_data = Path(data_dir) if data_dir else resolved_base / "data"
    if not resolved_data.is_absolute():
        resolved_data = resolved_base / resolved_data
    resolved_db = (
        Path(database_path) if database_path else resolved_data / "musicscheduler.db"
    )
    if not resolved_db.is_absolute():
        resolved_db = resolved_base / resolved_db
    return resolved_base, resolved_data, resolved_db


def load_settings(config_override: Path | None = None) -> Settings:
    base_dir = Path(os.getenv("MUSICSCHEDULER_BASE_DIR", Path.cwd()))
    env_config = os.getenv("MUSICSCHEDULER_CONFIG")
    config_path = Path(
        config_override or env_config or base_dir / "musicscheduler.toml"
    )
    toml_config = _load_toml_config(config_path)

    base_dir_value, data_dir_value, database_path_value = _resolve_paths(
        base_dir=base_dir,
        data_dir=os.getenv("MUSICSCHEDULER_DATA_DIR", toml_config.get("data_dir")),
        database_path=os.getenv("MUSICSCHEDULER_DB", toml_config.get("database_path")),
    )

    values = {
        key: _config_layered_value(key, toml_config=toml_config) for key in DEFAULTS
    }
    if values["dispatch_policy"] not in {"strict", "simulate-on-restriction"}:
        raise ValueError(
            f"Unknown dispatch_policy {values['dispatch_policy']!r}; "
            "use 'strict' or 'simulate-on-restriction'"
        )

    settings = Settings(
        base_dir=base_dir_value,
        data_dir=data_dir_value,
        database_path=database_path_value,
        config_path=config_path,
        **values,
    )
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    return settings


def settings_as_dict(settings: Settings) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "base_dir": str(settings.base_dir),
        "data_dir": str(settings.data_dir),
        "database_path": str(settings.database_path),
    }
    for key in DEFAULTS:
        value = getattr(settings, key)
        if key in SECRET_KEYS:
            value = "********" if value else ""
        payload[key] = value
    return payload


def _toml_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def write_config_file(config: dict[str, Any], *, path: Path) -> None:
    lines = ["# Music scheduler configuration\n"]
    for key in sorted(config.keys()):
        lines.append(f"{key} = {_toml_literal(config[key])}\n")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(lines), encoding="utf-8")


def update_config_file(updates: dict[str, Any], *, path: Path | None = None) -> Settings:
    current_settings = settings if "settings" in globals() else load_settings()
    target_path = path or current_settings.config_path
    existing = _load_toml_config(target_path)
    merged = {**existing}
    for key, value in updates.items():
        if key not in DEFAULTS:
            continue
        merged[key] = _cast_value(key, value)
    write_config_file(merged, path=target_path)
    new_settings = load_settings(target_path)
    globals()["settings"] = new_settings
    return new_settings


settings = load_settings()
