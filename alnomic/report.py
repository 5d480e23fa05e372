"""
Diagnostic collection and output.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, TextIO
import json
import sys

from .model import SEVERITIES, severity_at_least


TOOL_NAME = "alnomic"
TOOL_VERSION = "0.1.0"

EXIT_OK = 0
EXIT_FINDINGS = 1
EXIT_INCOMPLETE = 2


@dataclass(frozen=True)
class Diagnostic:
    rule_id: str
    severity: str
    category: str
    path: str
    line: int
    column: int
    message: str

    def sort_key(self):
        return (self.path, self.line, self.column, self.rule_id, self.message)


def finalize(diagnostics: Iterable[Diagnostic]) -> List[Diagnostic]:
    """
    Sort, then keep the first diagnostic for each (rule, file, line, column).
    The result depends only on the set of inputs, never on their order.
    """
    ordered = sorted(diagnostics, key=Diagnostic.sort_key)
    seen = set()
    unique: List[Diagnostic] = []
    for diag in ordered:
        key = (diag.rule_id, diag.path, diag.line, diag.column)
        if key in seen:
            continue
        seen.add(key)
        unique.append(diag)
    return unique


def render_text(diagnostics: Iterable[Diagnostic]) -> str:
    lines = [
        f"{diag.path}:{diag.line}:{diag.column}: {diag.severity} [{diag.rule_id}] {diag.message}"
        for diag in diagnostics
    ]
    return "".join(line + "\n" for line in lines)


def diagnostic_to_json_obj(diag: Diagnostic) -> Dict[str, Any]:
    return {
        "rule_id": diag.rule_id,
        "severity": diag.severity,
        "category": diag.category,
        "message": diag.message,
        "location": {
            "file": diag.path,
            "line": diag.line,
            "column": diag.column,
        },
        "tool": TOOL_NAME,
        "version": TOOL_VERSION,
    }


def render_json(diagnostics: Iterable[Diagnostic]) -> str:
    payload = [diagnostic_to_json_obj(diag) for diag in diagnostics]
    return json.dumps(payload, indent=2) + "\n"


RENDERERS = {
    "text": render_text,
    "json": render_json,
}


def emit(diagnostics: List[Diagnostic], fmt: str = "text", out_path: Optional[str] = None,
         stream: Optional[TextIO] = None) -> None:
    rendered = RENDERERS[fmt](diagnostics)
    if out_path:
        with open(out_path, "w", encoding="utf-8") as handle:
            handle.write(rendered)
        sys.stderr.write(f"[alnomic] Wrote {len(diagnostics)} diagnostic(s) to {out_path}\n")
    else:
        (stream or sys.stdout).write(rendered)


def exit_status(diagnostics: Iterable[Diagnostic], fail_on: str = "error", completed: bool = True) -> int:
    if fail_on not in SEVERITIES:
        raise ValueError(f"unknown severity threshold '{fail_on}'")
    if not completed:
        return EXIT_INCOMPLETE
    if any(severity_at_least(diag.severity, fail_on) for diag in diagnostics):
        return EXIT_FINDINGS
    return EXIT_OK


def summarize(diagnostics: Iterable[Diagnostic]) -> Dict[str, int]:
    counts = {severity: 0 for severity in SEVERITIES}
    for diag in diagnostics:
        counts[diag.severity] = counts.get(diag.severity, 0) + 1
    return counts
