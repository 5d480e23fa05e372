"""
Rule configuration.

A rule config file is YAML (JSON is valid YAML) mapping rule ids to
settings::

    lookup-in-loop:
      severity: error
    missing-doc:
      enabled: false
    rule-in-page:
      options:
        max_logic_statements: 2

Anything the loader does not understand is a ConfigError: configuration
mistakes must stop the run before analysis starts.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import re

import yaml

from .model import SEVERITIES
from .rules import ENGINE_RULES, Rule, RuleRegistry


class ConfigError(Exception):
    """Invalid rule configuration, custom rule file or command-line setting."""


RULE_KEYS = ("enabled", "severity", "severity-override", "options")

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$", re.IGNORECASE)
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


@dataclass
class RuleSettings:
    enabled: bool = True
    severity: Optional[str] = None
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass
class EngineSettings:
    """Per-run settings shared read-only by every file analysis."""
    rules: Dict[str, RuleSettings] = field(default_factory=dict)
    prefix: Optional[str] = None

    def is_enabled(self, rule_id: str) -> bool:
        settings = self.rules.get(rule_id)
        return settings.enabled if settings else True

    def severity_for(self, rule_id: str, default: str) -> str:
        settings = self.rules.get(rule_id)
        if settings and settings.severity:
            return settings.severity
        return default

    def options_for(self, rule: Rule) -> Dict[str, Any]:
        merged = dict(rule.options)
        settings = self.rules.get(rule.id)
        if settings:
            merged.update(settings.options)
        return merged


def _check_option(rule: Rule, name: str, value: Any, origin: str) -> Any:
    if name not in rule.options:
        known = ", ".join(sorted(rule.options)) or "none"
        raise ConfigError(f"{origin}: rule '{rule.id}' has no option '{name}' (known options: {known})")
    default = rule.options[name]
    if isinstance(default, bool):
        valid = isinstance(value, bool)
    elif isinstance(default, int):
        valid = isinstance(value, int) and not isinstance(value, bool)
    elif isinstance(default, list):
        valid = isinstance(value, list) and all(isinstance(item, str) for item in value)
    elif isinstance(default, str):
        valid = isinstance(value, str)
    else:
        valid = True
    if not valid:
        raise ConfigError(
            f"{origin}: option '{name}' of rule '{rule.id}' expects {type(default).__name__}, "
            f"got {type(value).__name__}"
        )
    return value


def parse_rule_config(data: Any, registry: RuleRegistry, origin: str = "<config>") -> EngineSettings:
    """Validate an already-loaded config document."""
    settings = EngineSettings()
    if data is None:
        return settings
    if not isinstance(data, dict):
        raise ConfigError(f"{origin}: expected a mapping of rule ids to settings")

    for rule_id, raw in data.items():
        rule_id = str(rule_id)
        rule = registry.get(rule_id)
        if rule is None and rule_id not in ENGINE_RULES:
            raise ConfigError(f"{origin}: unknown rule id '{rule_id}'")
        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise ConfigError(f"{origin}: settings for '{rule_id}' must be a mapping")

        unknown = [key for key in raw if key not in RULE_KEYS]
        if unknown:
            raise ConfigError(f"{origin}: unknown key(s) {sorted(map(str, unknown))} for rule '{rule_id}'")

        entry = RuleSettings()
        if "enabled" in raw:
            if not isinstance(raw["enabled"], bool):
                raise ConfigError(f"{origin}: 'enabled' of rule '{rule_id}' must be true or false")
            entry.enabled = raw["enabled"]

        severity = raw.get("severity", raw.get("severity-override"))
        if severity is not None:
            if not isinstance(severity, str) or severity.lower() not in SEVERITIES:
                raise ConfigError(
                    f"{origin}: unknown severity {severity!r} for rule '{rule_id}' "
                    f"(expected one of {', '.join(SEVERITIES)})"
                )
            entry.severity = severity.lower()

        options = raw.get("options")
        if options is not None:
            if not isinstance(options, dict):
                raise ConfigError(f"{origin}: 'options' of rule '{rule_id}' must be a mapping")
            if rule is None:
                raise ConfigError(f"{origin}: rule '{rule_id}' takes no options")
            for name, value in options.items():
                entry.options[str(name)] = _check_option(rule, str(name), value, origin)

        settings.rules[rule_id] = entry
    return settings


def load_rule_config(path: str, registry: Optional[RuleRegistry] = None) -> EngineSettings:
    """Read and validate a rule config file; raises ConfigError on any problem."""
    if registry is None:
        from .engine import default_registry
        registry = default_registry()
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except OSError as exc:
        raise ConfigError(f"could not read rule config {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"rule config {path} is not valid YAML: {exc}") from exc
    return parse_rule_config(data, registry, origin=path)


def parse_duration(text: str) -> float:
    """``500ms``, ``30s``, ``2m``, ``1h`` or bare seconds, as seconds."""
    match = _DURATION_RE.match(text)
    if match is None:
        raise ConfigError(f"invalid duration {text!r} (use e.g. 500ms, 30s, 2m, 1h)")
    value = float(match.group(1))
    unit = (match.group(2) or "s").lower()
    seconds = value * _DURATION_UNITS[unit]
    if seconds <= 0:
        raise ConfigError(f"duration must be positive, got {text!r}")
    return seconds
