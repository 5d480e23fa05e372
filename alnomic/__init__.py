"""
alnomic: convention enforcement for AL (Business Central) source files.

    >>> import alnomic
    >>> diagnostics = alnomic.analyze_source(text, path="Customer.Table.al")
"""

from .config import ConfigError, EngineSettings, load_rule_config
from .engine import AnalysisRun, analyze_file, analyze_paths, analyze_source, default_registry, parse_source
from .report import Diagnostic, render_json, render_text
from .rules import DEFAULT_REGISTRY, Finding, Rule, RuleRegistry

__version__ = "0.1.0"

__all__ = [
    "AnalysisRun",
    "ConfigError",
    "DEFAULT_REGISTRY",
    "Diagnostic",
    "EngineSettings",
    "Finding",
    "Rule",
    "RuleRegistry",
    "analyze_file",
    "analyze_paths",
    "analyze_source",
    "default_registry",
    "load_rule_config",
    "parse_source",
    "render_json",
    "render_text",
]
