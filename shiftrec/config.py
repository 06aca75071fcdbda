"""Configuration for the shift recorder server and capture client.

Values come from built-in defaults, overlaid by YAML files and then by
environment variables. Files are looked up in this order, highest priority first:

- $SHIFTREC_CONFIG
- /etc/shiftrec/config.yaml
- config.yaml next to the shiftrec package
- config.yaml next to the launched script
- config.yaml in the working directory
"""
from __future__ import annotations

import copy
import os
import sys
from pathlib import Path
from typing import Any, Callable, Dict, Tuple

import yaml

GIB = 1024 * 1024 * 1024
MIB = 1024 * 1024
DEFAULT_JWT_SECRET = "change-me-shift-recorder-upload-secret"

_DEFAULTS: Dict[str, Any] = {
    "paths": {
        "audio_root": "./uploads/audio",
        "store_file": "./uploads/recordings.json",
    },
    "transcode": {
        "ffmpeg_bin": "",
        "codec": "aac",
        "bitrate_kbps": 96,
        "sample_rate": 48000,
        "channels": 1,
        "container_ext": ".m4a",
        "timeout_sec": 120.0,
    },
    "merge": {
        "max_hint_seconds": 600.0,
        "raw_fallback_bitrate_kbps": 128,
        "io_retries": 3,
        "io_retry_delay_sec": 0.05,
    },
    "retention": {
        "max_total_bytes": 30 * GIB,
        "max_age_days": 15,
        "sweep_interval_sec": 3600.0,
    },
    "sessions": {
        "stop_grace_seconds": 90.0,
    },
    "upload": {
        "max_bytes": 200 * MIB,
    },
    "auth": {
        "jwt_secret": DEFAULT_JWT_SECRET,
        "jwt_algorithm": "HS256",
        "token_ttl_days": 180,
        "device_lock": False,
    },
    "web_server": {
        "listen_host": "0.0.0.0",
        "listen_port": 8080,
    },
    "recorder": {
        "server_url": "http://127.0.0.1:8080",
        "rotation_seconds": 60.0,
        "first_segment_seconds": 10.0,
        "capture_format": "alsa",
        "capture_device": "default",
        "bitrate_kbps": 128,
        "codec_preference": [
            {"encoder": "libopus", "format": "ogg", "ext": ".ogg"},
            {"encoder": "libopus", "format": "webm", "ext": ".webm"},
            {"encoder": "libvorbis", "format": "ogg", "ext": ".ogg"},
            {"encoder": "aac", "format": "ipod", "ext": ".m4a"},
        ],
        "upload_timeout_sec": 30.0,
    },
    "logging": {
        "dev_mode": False,
    },
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None

CONFIG_ENV = "SHIFTREC_CONFIG"
SYSTEM_CONFIG = Path("/etc/shiftrec/config.yaml")


def _truthy(raw: str) -> bool:
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _non_empty(raw: str) -> str:
    value = raw.strip()
    if not value:
        raise ValueError("empty override")
    return value


# env var -> (section, key, parser); a parser raising ValueError leaves the value alone
ENV_OVERRIDES: Dict[str, Tuple[str, str, Callable[[str], Any]]] = {
    "AUDIO_UPLOAD_DIR": ("paths", "audio_root", _non_empty),
    "FFMPEG_BIN": ("transcode", "ffmpeg_bin", _non_empty),
    "JWT_SECRET": ("auth", "jwt_secret", _non_empty),
    "DEVICE_LOCK": ("auth", "device_lock", _truthy),
    "AUDIO_STORAGE_CAP_BYTES": ("retention", "max_total_bytes", int),
    "AUDIO_RETENTION_DAYS": ("retention", "max_age_days", int),
    "AUDIO_TRANSCODE_TIMEOUT_SEC": ("transcode", "timeout_sec", float),
    "LISTEN_HOST": ("web_server", "listen_host", str),
    "LISTEN_PORT": ("web_server", "listen_port", int),
}


def _read_yaml(path: Path) -> Dict[str, Any]:
    """Parse one YAML mapping; unreadable or non-mapping files count as empty."""

    try:
        if not path.is_file():
            return {}
        loaded = yaml.safe_load(path.read_text())
    except (OSError, yaml.YAMLError):
        return {}
    return loaded if isinstance(loaded, dict) else {}


def _config_candidates() -> list[Path]:
    """Highest priority first, duplicates removed."""

    package_root = Path(__file__).resolve().parent.parent
    try:
        launcher_dir = Path(sys.argv[0]).resolve().parent
    except (IndexError, OSError):
        launcher_dir = Path.cwd()

    raw: list[Path] = []
    explicit = os.getenv(CONFIG_ENV)
    if explicit:
        raw.append(Path(explicit).expanduser())
    raw += [
        SYSTEM_CONFIG,
        package_root / "config.yaml",
        launcher_dir / "config.yaml",
        Path.cwd() / "config.yaml",
    ]

    unique: dict[Path, None] = {}
    for path in raw:
        try:
            unique.setdefault(path.resolve(), None)
        except OSError:
            unique.setdefault(path, None)
    return list(unique)


def _merged(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for name, value in overlay.items():
        current = result.get(name)
        if isinstance(current, dict) and isinstance(value, dict):
            result[name] = _merged(current, value)
        else:
            result[name] = value
    return result


def _env_overrides(cfg: Dict[str, Any]) -> None:
    for env_name, (section_name, key, parse) in ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if raw is None:
            continue
        try:
            cfg.setdefault(section_name, {})[key] = parse(raw)
        except ValueError:
            continue
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True


def get_cfg() -> Dict[str, Any]:
    """Defaults, then every config file found (lowest priority first), then env."""

    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is None:
        candidates = _config_candidates()
        cfg = copy.deepcopy(_DEFAULTS)
        for path in reversed(candidates):
            cfg = _merged(cfg, _read_yaml(path))
        _env_overrides(cfg)

        _search_paths = candidates
        _active_config_path = next((p for p in candidates if p.exists()), None)
        _cfg_cache = cfg
    return _cfg_cache


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def active_config_path() -> Path | None:
    get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    get_cfg()
    return list(_search_paths)


def section(name: str) -> Dict[str, Any]:
    """Return a config section merged over its defaults."""

    defaults = copy.deepcopy(_DEFAULTS.get(name, {}))
    raw = get_cfg().get(name)
    if isinstance(raw, dict) and isinstance(defaults, dict):
        return _merged(defaults, raw)
    return defaults
