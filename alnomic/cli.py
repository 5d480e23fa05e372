"""
Command-line entry point.

    alnomic analyze src/ --format=json --fail-on=warning
    alnomic rules
"""

from __future__ import annotations
from typing import List, Optional
import argparse
import sys

from .config import ConfigError, EngineSettings, load_rule_config, parse_duration
from .custom import custom_rule_registry
from .engine import analyze_paths, default_registry
from .model import SEVERITIES
from .report import EXIT_INCOMPLETE, EXIT_OK, emit, exit_status, summarize
from .rules import RuleRegistry


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="alnomic",
        description="alnomic: convention enforcement for AL source files"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    analyze_p = subparsers.add_parser(
        "analyze",
        help="Analyze AL files or directories and report diagnostics."
    )
    analyze_p.add_argument(
        "paths",
        nargs="+",
        metavar="PATH",
        help="AL source files or directories (searched recursively for *.al)."
    )
    analyze_p.add_argument(
        "--format",
        choices=("text", "json"),
        default="text",
        help="Output format (default: text)."
    )
    analyze_p.add_argument(
        "--rule-config",
        metavar="CONFIG",
        help="YAML/JSON file enabling, disabling or re-configuring rules."
    )
    analyze_p.add_argument(
        "--rules",
        nargs="+",
        metavar="RULE_FILE",
        help="YAML file(s) with additional declarative rules."
    )
    analyze_p.add_argument(
        "--fail-on",
        choices=SEVERITIES,
        default="error",
        help="Lowest severity that makes the run exit with status 1 (default: error)."
    )
    analyze_p.add_argument(
        "--timeout",
        metavar="DURATION",
        help="Stop starting new file analyses after this long (500ms, 30s, 2m, 1h)."
    )
    analyze_p.add_argument(
        "--jobs",
        type=int,
        metavar="N",
        help="Number of files analyzed in parallel (default: CPU count)."
    )
    analyze_p.add_argument(
        "--prefix",
        metavar="AFFIX",
        help="Project prefix every object name must start with."
    )
    analyze_p.add_argument(
        "--out",
        metavar="OUT_FILE",
        help="Write diagnostics to this file instead of stdout."
    )

    rules_p = subparsers.add_parser(
        "rules",
        help="List the available rules."
    )
    rules_p.add_argument(
        "--rules",
        nargs="+",
        metavar="RULE_FILE",
        help="Include declarative rules from these YAML files."
    )
    return parser


def _load_registry(rule_files: Optional[List[str]]) -> RuleRegistry:
    return custom_rule_registry(rule_files, default_registry())


def run_analyze(args: argparse.Namespace) -> int:
    try:
        registry = _load_registry(args.rules)
        settings = load_rule_config(args.rule_config, registry) if args.rule_config else EngineSettings()
        timeout = parse_duration(args.timeout) if args.timeout else None
        if args.jobs is not None and args.jobs < 1:
            raise ConfigError(f"--jobs must be at least 1, got {args.jobs}")
    except ConfigError as exc:
        sys.stderr.write(f"[alnomic] {exc}\n")
        return EXIT_INCOMPLETE
    settings.prefix = args.prefix

    run = analyze_paths(args.paths, registry=registry, settings=settings, jobs=args.jobs, timeout=timeout)
    try:
        emit(run.diagnostics, fmt=args.format, out_path=args.out)
    except OSError as exc:
        sys.stderr.write(f"[alnomic] Could not write {args.out}: {exc}\n")
        return EXIT_INCOMPLETE

    counts = summarize(run.diagnostics)
    sys.stderr.write(
        f"[alnomic] {run.files_completed} of {run.files_total} file(s) analyzed: "
        f"{counts['error']} error(s), {counts['warning']} warning(s), {counts['info']} info.\n"
    )
    return exit_status(run.diagnostics, fail_on=args.fail_on, completed=run.completed)


def run_rules(args: argparse.Namespace) -> int:
    try:
        registry = _load_registry(args.rules)
    except ConfigError as exc:
        sys.stderr.write(f"[alnomic] {exc}\n")
        return EXIT_INCOMPLETE
    for rule in registry:
        kinds = ",".join(rule.kinds)
        sys.stdout.write(f"{rule.id}\t{rule.category}\t{rule.severity}\t{kinds}\t{rule.description}\n")
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "analyze":
        return run_analyze(args)
    if args.command == "rules":
        return run_rules(args)

    # unreachable if parser is correct
    return EXIT_INCOMPLETE


if __name__ == "__main__":
    sys.exit(main())
