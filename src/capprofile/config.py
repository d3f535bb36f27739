from __future__ import annotations

"""Profiler configuration loading: YAML file, JSON Schema validation, environment overrides."""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from jsonschema import Draft202012Validator

from .generalize import DEFAULT_PATTERNS, DEFAULT_WILDCARD, GeneralizePattern, Generalizer
from .policy import DEFAULT_POLICY_TITLE


CONFIG_SCHEMA_VERSION = "0.1"
DEFAULT_CONFIG_NAME = "capprofile.yaml"
DEFAULT_RULE_LOG = "policy-rules.txt"
DEFAULT_POLICY_FILE = "capprofile.policy"


def _schema_path() -> Path:
    return Path(__file__).resolve().parent / "schema" / "config.schema.json"


def _load_schema() -> dict[str, Any]:
    path = _schema_path()
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ValueError(f"Config schema is not readable JSON: {path}") from exc
    if not isinstance(payload, dict):
        raise ValueError(f"Config schema must be a JSON object: {path}")
    return payload


@dataclass(frozen=True)
class ProfilerConfig:
    """Resolved settings for one profiling run and its consolidation pass."""

    rule_log: Path = Path(DEFAULT_RULE_LOG)
    policy_file: Path = Path(DEFAULT_POLICY_FILE)
    policy_title: str = DEFAULT_POLICY_TITLE
    trace: bool = True
    append: bool = False
    excluded_events: frozenset[str] = frozenset()
    wildcard: str = DEFAULT_WILDCARD
    patterns: tuple[GeneralizePattern, ...] = field(default=DEFAULT_PATTERNS)
    source: Path | None = None

    def generalizer(self) -> Generalizer:
        return Generalizer(self.patterns, wildcard=self.wildcard)


def resolve_config_path(path: Path | None = None) -> Path | None:
    """Pick the config file: explicit path, then CAPPROFILE_CONFIG, then ./capprofile.yaml."""

    if path is not None:
        return path
    configured = os.environ.get("CAPPROFILE_CONFIG", "").strip()
    if configured:
        return Path(configured).expanduser()
    candidate = Path.cwd() / DEFAULT_CONFIG_NAME
    if candidate.is_file():
        return candidate
    return None


def _read_payload(path: Path) -> dict[str, Any]:
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ValueError(f"Config file not readable: {path}") from exc
    except yaml.YAMLError as exc:
        raise ValueError(f"Config file is not valid YAML: {path}") from exc
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValueError(f"Config file must be a mapping: {path}")
    errors = sorted(Draft202012Validator(_load_schema()).iter_errors(payload), key=lambda err: list(err.path))
    if errors:
        first = errors[0]
        where = ".".join(str(part) for part in first.path) or "<root>"
        raise ValueError(f"Config schema validation failed for {path} at {where}: {first.message}")
    return payload


def _patterns(section: dict[str, Any]) -> tuple[GeneralizePattern, ...]:
    custom = tuple(GeneralizePattern.compile(item["name"], item["anchor"]) for item in section.get("patterns", []))
    if section.get("include_defaults", True):
        return custom + DEFAULT_PATTERNS
    return custom


def load_config(path: Path | None = None) -> ProfilerConfig:
    """Load, validate, and resolve profiler settings; raises ValueError on bad input."""

    source = resolve_config_path(path)
    payload = _read_payload(source) if source is not None else {}
    base = source.parent if source is not None else Path.cwd()

    def _resolve(value: str) -> Path:
        candidate = Path(value).expanduser()
        return candidate if candidate.is_absolute() else base / candidate

    rule_log = os.environ.get("CAPPROFILE_RULE_LOG", "").strip()
    policy_file = os.environ.get("CAPPROFILE_POLICY", "").strip()
    generalize = payload.get("generalize", {})
    return ProfilerConfig(
        rule_log=Path(rule_log) if rule_log else _resolve(payload.get("rule_log", DEFAULT_RULE_LOG)),
        policy_file=Path(policy_file) if policy_file else _resolve(payload.get("policy_file", DEFAULT_POLICY_FILE)),
        policy_title=payload.get("policy_title", DEFAULT_POLICY_TITLE),
        trace=bool(payload.get("trace", True)),
        append=bool(payload.get("append", False)),
        excluded_events=frozenset(payload.get("events", {}).get("exclude", [])),
        wildcard=generalize.get("wildcard", DEFAULT_WILDCARD),
        patterns=_patterns(generalize),
        source=source,
    )
