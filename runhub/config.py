"""Hub config loader + strict validation.

Loads an optional YAML file, then applies environment overrides. Invalid
config => fail-closed with a HubConfigError listing every problem.

Example (``runhub.yaml``)::

    port: 8080
    runner_argv: ["vendor/bin/phpunit"]
    extra_args: ["--extension", "PhpUnitHub\\\\PHPUnit\\\\PhpUnitHubExtension"]
    grace_period_sec: 2
    notify_argv: ["notify-send", "Tests {result}", "{tests} tests, {failures} failures"]
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml

from .errors import HubConfigError

CONFIG_ENV = "RUNHUB_CONFIG"

_LIST_OF_STR = {
    "runner_argv", "extra_args", "ignored_options", "watch_paths", "watch_extensions",
}
_POSITIVE_NUMBERS = {"grace_period_sec", "watch_debounce_sec"}
_POSITIVE_INTS = {"viewer_queue_size", "history_size", "stdout_tail_lines"}
_NON_NEGATIVE_INTS = {"max_concurrent_runs"}


@dataclass
class HubConfig:
    host: str = "127.0.0.1"
    port: int = 8080
    runner_argv: list[str] = field(default_factory=lambda: ["vendor/bin/phpunit"])
    extra_args: list[str] = field(default_factory=list)
    working_dir: Optional[str] = None
    env: dict[str, str] = field(default_factory=dict)
    grace_period_sec: float = 2.0
    max_concurrent_runs: int = 0
    viewer_queue_size: int = 1000
    history_size: int = 20
    stdout_tail_lines: int = 200
    ignored_options: list[str] = field(
        default_factory=lambda: ["displayMode", "coverage"]
    )
    notify_argv: Optional[list[str]] = None
    watch_paths: list[str] = field(default_factory=list)
    watch_extensions: list[str] = field(default_factory=lambda: [".php"])
    watch_debounce_sec: float = 0.5

    @property
    def cwd(self) -> str:
        return self.working_dir or os.getcwd()

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "HubConfig":
        errors = validate_hub_config(data)
        if errors:
            raise HubConfigError("Invalid runhub config:\n  - " + "\n  - ".join(errors))
        cfg = HubConfig()
        for key, value in data.items():
            if key in _LIST_OF_STR or key == "notify_argv":
                value = list(value) if value is not None else None
            elif key == "env":
                value = {str(k): str(v) for k, v in value.items()}
            elif key in _POSITIVE_NUMBERS:
                value = float(value)
            setattr(cfg, key, value)
        return cfg


ALLOWED_KEYS = frozenset(f.name for f in fields(HubConfig))


def validate_hub_config(data: Any) -> list[str]:
    """Validate a config mapping. Returns list of errors (empty = valid)."""
    if not isinstance(data, dict):
        return [f"top-level value must be a mapping, got {type(data).__name__}"]

    errors: list[str] = []
    for key in sorted(set(data) - ALLOWED_KEYS):
        errors.append(f"unknown key {key!r}")

    for key, value in data.items():
        if key not in ALLOWED_KEYS:
            continue
        if key == "host":
            if not isinstance(value, str) or not value:
                errors.append("host must be a non-empty string")
        elif key == "port":
            if isinstance(value, bool) or not isinstance(value, int) or not 0 < value < 65536:
                errors.append("port must be an integer between 1 and 65535")
        elif key in _LIST_OF_STR:
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                errors.append(f"{key} must be a list of strings")
        elif key == "notify_argv":
            if value is not None and (
                not isinstance(value, list)
                or not value
                or not all(isinstance(v, str) for v in value)
            ):
                errors.append("notify_argv must be null or a non-empty list of strings")
        elif key == "working_dir":
            if value is not None and not isinstance(value, str):
                errors.append("working_dir must be a string")
        elif key == "env":
            if not isinstance(value, dict):
                errors.append("env must be a mapping")
        elif key in _POSITIVE_NUMBERS:
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                errors.append(f"{key} must be a positive number")
        elif key in _POSITIVE_INTS:
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                errors.append(f"{key} must be a positive integer")
        elif key in _NON_NEGATIVE_INTS:
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                errors.append(f"{key} must be a non-negative integer")

    if "runner_argv" in data and data["runner_argv"] == []:
        errors.append("runner_argv must not be empty")

    return errors


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise HubConfigError(f"{path}: cannot read config: {exc}") from exc
    except yaml.YAMLError as exc:
        raise HubConfigError(f"{path}: invalid YAML") from exc
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise HubConfigError(
            f"{path}: top-level value is not a mapping: {type(raw).__name__}"
        )
    return raw


def _env_overrides(environ: dict[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if environ.get("RUNHUB_HOST"):
        overrides["host"] = environ["RUNHUB_HOST"]
    for name, key, conv in (
        ("RUNHUB_PORT", "port", int),
        ("RUNHUB_GRACE_PERIOD", "grace_period_sec", float),
        ("RUNHUB_MAX_RUNS", "max_concurrent_runs", int),
    ):
        if environ.get(name):
            try:
                overrides[key] = conv(environ[name])
            except ValueError as exc:
                raise HubConfigError(f"{name}: {exc}") from exc
    if environ.get("RUNHUB_WORKING_DIR"):
        overrides["working_dir"] = environ["RUNHUB_WORKING_DIR"]
    return overrides


def load_hub_config(
    path: str | Path | None = None,
    environ: Optional[dict[str, str]] = None,
    **overrides: Any,
) -> HubConfig:
    """Load config from YAML (optional) + env + explicit overrides.

    Explicit overrides whose value is None are ignored, so argparse
    namespaces can be passed through directly.
    """
    environ = dict(os.environ if environ is None else environ)
    path = path or environ.get(CONFIG_ENV)

    data: dict[str, Any] = {}
    if path:
        p = Path(path).expanduser()
        if not p.is_file():
            raise HubConfigError(f"Config file not found: {p}")
        data.update(_read_yaml(p))

    data.update(_env_overrides(environ))
    data.update({k: v for k, v in overrides.items() if v is not None})
    return HubConfig.from_dict(data)
