import dataclasses
import json
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from dotenv import load_dotenv

from .errors import ConfigError

CONFIG_ENV_VAR = "AGENT_SIDECAR_CONFIG"
CONFIG_FILENAME = ".agent-sidecar/config.yml"
CONFIG_VERSION = 1

PERMISSION_MODES = ("default", "acceptEdits", "bypassPermissions", "plan")

DEFAULT_WORKER_CONFIG: Dict[str, Any] = {
    "version": CONFIG_VERSION,
    "engine": {
        "executable": "claude",
        "extra_args": [],
        "default_max_turns": 50,
        "default_permission_mode": "bypassPermissions",
        "setting_sources": ["project"],
    },
    "shutdown": {
        "grace_seconds": 3.0,
    },
    "mock": {
        "enabled": False,
        "templates_dir": None,
        "delay_seconds": 0.1,
    },
    "log": {
        "path": None,
        "max_bytes": 10_000_000,
        "backup_count": 3,
        "level": "INFO",
    },
}

__all__ = [
    "ConfigError",
    "DEFAULT_WORKER_CONFIG",
    "LogConfig",
    "MockConfig",
    "WorkerConfig",
    "default_worker_config",
    "load_config",
]


@dataclasses.dataclass
class LogConfig:
    path: Optional[Path]
    max_bytes: int
    backup_count: int
    level: str = "INFO"


@dataclasses.dataclass
class MockConfig:
    enabled: bool
    templates_dir: Optional[Path]
    delay_seconds: float


@dataclasses.dataclass
class WorkerConfig:
    raw: Dict[str, Any]
    root: Path
    engine_executable: str
    engine_extra_args: List[str]
    default_max_turns: int
    default_permission_mode: str
    setting_sources: List[str]
    shutdown_grace_seconds: float
    mock: MockConfig
    log: LogConfig

    @property
    def mock_agents(self) -> bool:
        return self.mock.enabled


def _merge_defaults(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = json.loads(json.dumps(base))
    for key, value in overrides.items():
        if isinstance(value, dict) and key in merged and isinstance(merged[key], dict):
            merged[key] = _merge_defaults(merged[key], value)
        else:
            merged[key] = value
    return merged


def _env_flag(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    return value.strip().lower() in ("1", "true", "yes", "on")


def _load_dotenv_for_config(config_path: Path) -> None:
    candidates = [config_path.parent.parent / ".env", config_path.parent / ".env"]
    for candidate in candidates:
        if candidate.exists():
            load_dotenv(dotenv_path=candidate, override=False)


def resolve_config_path(
    explicit: Optional[Path], env: Mapping[str, str]
) -> Optional[Path]:
    if explicit is not None:
        if not explicit.exists():
            raise ConfigError(f"Config file not found: {explicit}")
        return explicit
    from_env = env.get(CONFIG_ENV_VAR)
    if from_env:
        path = Path(from_env)
        if not path.exists():
            raise ConfigError(f"{CONFIG_ENV_VAR} points at a missing file: {path}")
        return path
    candidate = Path.cwd() / CONFIG_FILENAME
    return candidate if candidate.exists() else None


def collect_env_overrides(env: Mapping[str, str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    mock_flag = _env_flag(env.get("MOCK_AGENTS"))
    if mock_flag is not None:
        overrides.setdefault("mock", {})["enabled"] = mock_flag
    templates = env.get("AGENT_SIDECAR_MOCK_TEMPLATES")
    if templates:
        overrides.setdefault("mock", {})["templates_dir"] = templates
    binary = env.get("AGENT_SIDECAR_CLAUDE_BIN")
    if binary:
        overrides.setdefault("engine", {})["executable"] = binary
    level = env.get("AGENT_SIDECAR_LOG_LEVEL")
    if level:
        overrides.setdefault("log", {})["level"] = level
    return overrides


def load_config(
    config_path: Optional[Path] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
) -> WorkerConfig:
    """
    Build the worker config from defaults, an optional YAML file and
    environment overrides (environment wins).
    """
    path = resolve_config_path(config_path, env if env is not None else os.environ)
    data: Dict[str, Any] = {}
    root = Path.cwd()
    if path is not None:
        _load_dotenv_for_config(path)
        try:
            with path.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"{path} must contain a mapping")
        root = path.parent.resolve()
    # dotenv may have populated os.environ, so read it after loading.
    current_env = env if env is not None else os.environ
    merged = _merge_defaults(DEFAULT_WORKER_CONFIG, data)
    merged = _merge_defaults(merged, collect_env_overrides(current_env))
    _validate_worker_config(merged)
    return _build_worker_config(root, merged)


def _build_worker_config(root: Path, cfg: Dict[str, Any]) -> WorkerConfig:
    engine = cfg["engine"]
    mock = cfg["mock"]
    log_cfg = cfg["log"]
    templates_dir = mock.get("templates_dir")
    log_path = log_cfg.get("path")
    return WorkerConfig(
        raw=cfg,
        root=root,
        engine_executable=str(engine["executable"]),
        engine_extra_args=[str(arg) for arg in engine.get("extra_args") or []],
        default_max_turns=int(engine["default_max_turns"]),
        default_permission_mode=str(engine["default_permission_mode"]),
        setting_sources=[str(src) for src in engine.get("setting_sources") or []],
        shutdown_grace_seconds=float(cfg["shutdown"]["grace_seconds"]),
        mock=MockConfig(
            enabled=bool(mock.get("enabled")),
            templates_dir=root / templates_dir if templates_dir else None,
            delay_seconds=float(mock.get("delay_seconds", 0.1)),
        ),
        log=LogConfig(
            path=root / log_path if log_path else None,
            max_bytes=int(log_cfg["max_bytes"]),
            backup_count=int(log_cfg["backup_count"]),
            level=str(log_cfg.get("level") or "INFO").upper(),
        ),
    )


def _validate_worker_config(cfg: Dict[str, Any]) -> None:
    if cfg.get("version") != CONFIG_VERSION:
        raise ConfigError(f"Unsupported config version; expected {CONFIG_VERSION}")
    for section in ("engine", "shutdown", "mock", "log"):
        if not isinstance(cfg.get(section), dict):
            raise ConfigError(f"{section} section must be a mapping")
    engine = cfg["engine"]
    if not isinstance(engine.get("executable"), str) or not engine["executable"]:
        raise ConfigError("engine.executable must be a non-empty string")
    if not isinstance(engine.get("extra_args", []), list):
        raise ConfigError("engine.extra_args must be a list")
    max_turns = engine.get("default_max_turns")
    if not isinstance(max_turns, int) or isinstance(max_turns, bool) or max_turns <= 0:
        raise ConfigError("engine.default_max_turns must be a positive integer")
    if engine.get("default_permission_mode") not in PERMISSION_MODES:
        raise ConfigError(
            "engine.default_permission_mode must be one of " + ", ".join(PERMISSION_MODES)
        )
    grace = cfg["shutdown"].get("grace_seconds")
    if not isinstance(grace, (int, float)) or isinstance(grace, bool) or grace <= 0:
        raise ConfigError("shutdown.grace_seconds must be a positive number")
    if not isinstance(cfg["mock"].get("enabled", False), bool):
        raise ConfigError("mock.enabled must be boolean")
    delay = cfg["mock"].get("delay_seconds", 0.1)
    if not isinstance(delay, (int, float)) or isinstance(delay, bool) or delay < 0:
        raise ConfigError("mock.delay_seconds must be a non-negative number")
    log_cfg = cfg["log"]
    for key in ("max_bytes", "backup_count"):
        if not isinstance(log_cfg.get(key), int):
            raise ConfigError(f"log.{key} must be an integer")


def default_worker_config(root: Optional[Path] = None) -> WorkerConfig:
    merged = _merge_defaults(DEFAULT_WORKER_CONFIG, {})
    return _build_worker_config((root or Path.cwd()).resolve(), merged)
