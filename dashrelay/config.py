#!/usr/bin/env python3
"""
Unified configuration loader for dashrelay.

Load order (first found wins):
  1) DASHRELAY_CONFIG (env, absolute or relative to CWD)
  2) /etc/dashrelay/config.yaml
  3) ~/.config/dashrelay/config.yaml
  4) ./config.yaml (current working directory)

Environment variables override file values when present; command line flags
override both.
"""
from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any, Dict

import yaml


class ConfigError(Exception):
    """Raised when configuration values cannot be used to start a run."""


_DEFAULTS: Dict[str, Any] = {
    "ingest": {
        "host": "127.0.0.1",
        "port": 1935,
    },
    "http": {
        "host": "0.0.0.0",
        "port": 3000,
    },
    "encoder": {
        "cpu_used": 5,
        "resolution": "1280x720",
        "video_bitrate": "4000k",
        "crf": 30,
        "framerate": 30,
        "audio_sample_rate": "44100",
        "audio_bitrate": "128k",
    },
    "web_server": {
        # off | self-signed | manual
        "tls": "off",
        "certificate_path": "",
        "private_key_path": "",
        "lookup_external_ip": True,
    },
    "supervisor": {
        "ffmpeg_path": "ffmpeg",
        "poll_interval_sec": 0.5,
        "settle_delay_sec": 1.0,
        "linger_sec": 6.0,
    },
    "presence": {
        "sweep_interval_sec": 1.0,
        "expiry_factor": 6,
    },
    "logging": {
        "level": "INFO",
    },
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    try:
        if not path.is_file():
            return {}
    except OSError:
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Unable to read config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level")
    return data


def _candidate_search_paths() -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("DASHRELAY_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path("/etc/dashrelay/config.yaml"),
            Path("~/.config/dashrelay/config.yaml").expanduser(),
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        try:
            resolved = candidate.resolve()
        except OSError:
            resolved = candidate
        if resolved in seen:
            continue
        seen.add(resolved)
        ordered.append(resolved)
    return ordered


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    def _parse_bool(value: str) -> bool:
        return value.strip().lower() in {"1", "true", "yes", "on"}

    if "DASHRELAY_FFMPEG" in os.environ:
        value = os.environ["DASHRELAY_FFMPEG"].strip()
        if value:
            cfg.setdefault("supervisor", {})["ffmpeg_path"] = value
    for env_name, section, key in (
        ("DASHRELAY_HTTP_IP", "http", "host"),
        ("DASHRELAY_RTMP_IP", "ingest", "host"),
    ):
        value = os.environ.get(env_name, "").strip()
        if value:
            cfg.setdefault(section, {})[key] = value
    for env_name, section in (
        ("DASHRELAY_HTTP_PORT", "http"),
        ("DASHRELAY_RTMP_PORT", "ingest"),
    ):
        if env_name in os.environ:
            try:
                cfg.setdefault(section, {})["port"] = int(os.environ[env_name])
            except ValueError as exc:
                raise ConfigError(f"{env_name} must be an integer") from exc
    if "DASHRELAY_TLS" in os.environ:
        raw = os.environ["DASHRELAY_TLS"].strip().lower()
        if raw in {"self-signed", "manual", "off"}:
            mode = raw
        else:
            mode = "self-signed" if _parse_bool(raw) else "off"
        cfg.setdefault("web_server", {})["tls"] = mode
    if "DASHRELAY_LOG_LEVEL" in os.environ:
        level = os.environ["DASHRELAY_LOG_LEVEL"].strip().upper()
        if level:
            cfg.setdefault("logging", {})["level"] = level


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    search = _candidate_search_paths()
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        try:
            if candidate.is_file():
                active = candidate
                break
        except OSError:
            pass

    # lowest priority first so earlier entries win
    for candidate in reversed(search):
        cfg = _deep_merge(cfg, _load_yaml_if_exists(candidate))

    _active_config_path = active

    _apply_env_overrides(cfg)
    _cfg_cache = cfg
    return cfg


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def active_config_path() -> Path | None:
    if _cfg_cache is None:
        get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    if not _search_paths:
        get_cfg()
    return list(_search_paths)


def section(cfg: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = cfg.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"config section {name!r} must be a mapping")
    return value


def coerce_int(value: Any, *, name: str, minimum: int | None = None, maximum: int | None = None) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be an integer, got {value!r}")
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from exc
    if minimum is not None and number < minimum:
        raise ConfigError(f"{name} must be at least {minimum}, got {number}")
    if maximum is not None and number > maximum:
        raise ConfigError(f"{name} must be at most {maximum}, got {number}")
    return number


def coerce_float(value: Any, *, name: str, minimum: float | None = None) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be a number, got {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be a number, got {value!r}") from exc
    if minimum is not None and number < minimum:
        raise ConfigError(f"{name} must be at least {minimum}, got {number}")
    return number
