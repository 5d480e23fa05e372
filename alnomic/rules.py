"""
Rule models and the rule registry.

A rule is a plain function registered against the node kinds it inspects:

    @DEFAULT_REGISTRY.rule(
        "commit-in-loop",
        category="TransactionScope",
        severity="error",
        kinds=("call",),
        message="Commit inside %1",
    )
    def commit_in_loop(node, ctx, decl, source):
        ...
        yield Finding(node.span, ("a loop",))

The evaluator asks the registry for the rules matching each node kind; the
traversal itself never names a rule.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple
import re

from .model import SEVERITIES, Span


CATEGORIES = ("Architecture", "Performance", "CodeQuality", "TransactionScope", "DataIntegrity")

# Diagnostics produced by the engine itself rather than by a registered rule.
SYNTAX_ERROR = "syntax-error"
INTERNAL_ERROR = "internal-error"
IO_ERROR = "io-error"

ENGINE_RULES: Dict[str, Tuple[str, str]] = {
    SYNTAX_ERROR: ("Syntax", "error"),
    INTERNAL_ERROR: ("Engine", "warning"),
    IO_ERROR: ("Engine", "error"),
}

PLACEHOLDER_PATTERN = re.compile(r"%(\d+)")


@dataclass
class Finding:
    """What a rule check yields: where, and the values for the message placeholders."""
    span: Span
    args: Tuple[Any, ...] = ()
    message: Optional[str] = None  # overrides the rule's template when set


RuleCheck = Callable[..., Optional[Iterable[Finding]]]


@dataclass
class Rule:
    id: str
    category: str
    severity: str
    kinds: Tuple[str, ...]
    message: str
    check: RuleCheck
    description: str = ""
    options: Dict[str, Any] = field(default_factory=dict)
    custom: bool = False

    def render(self, finding: Finding) -> str:
        if finding.message is not None:
            return finding.message
        return render_message(self.message, finding.args)


def render_message(template: str, args: Sequence[Any]) -> str:
    """Fill ``%1``..``%n``; placeholders without a value are left as written."""

    def replace(match: re.Match[str]) -> str:
        index = int(match.group(1)) - 1
        if 0 <= index < len(args):
            return str(args[index])
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(replace, template)


class RuleRegistry:
    def __init__(self, rules: Iterable[Rule] = ()) -> None:
        self._rules: Dict[str, Rule] = {}
        self._by_kind: Dict[str, List[Rule]] = {}
        for rule in rules:
            self.register(rule)

    def register(self, rule: Rule) -> Rule:
        if rule.id in self._rules or rule.id in ENGINE_RULES:
            raise ValueError(f"duplicate rule id '{rule.id}'")
        if rule.severity not in SEVERITIES:
            raise ValueError(f"rule '{rule.id}' has unknown severity '{rule.severity}'")
        self._rules[rule.id] = rule
        for kind in rule.kinds:
            bucket = self._by_kind.setdefault(kind, [])
            bucket.append(rule)
            bucket.sort(key=lambda entry: entry.id)
        return rule

    def rule(
        self,
        rule_id: str,
        *,
        category: str,
        severity: str,
        kinds: Sequence[str],
        message: str,
        description: str = "",
        options: Optional[Dict[str, Any]] = None,
    ) -> Callable[[RuleCheck], RuleCheck]:
        """Decorator form of ``register``."""

        def decorator(func: RuleCheck) -> RuleCheck:
            summary = description
            if not summary and func.__doc__:
                summary = func.__doc__.strip().splitlines()[0]
            self.register(
                Rule(
                    id=rule_id,
                    category=category,
                    severity=severity,
                    kinds=tuple(kinds),
                    message=message,
                    check=func,
                    description=summary,
                    options=dict(options or {}),
                )
            )
            return func

        return decorator

    def get(self, rule_id: str) -> Optional[Rule]:
        return self._rules.get(rule_id)

    def __contains__(self, rule_id: object) -> bool:
        return rule_id in self._rules

    def __iter__(self) -> Iterator[Rule]:
        return iter(sorted(self._rules.values(), key=lambda rule: rule.id))

    def __len__(self) -> int:
        return len(self._rules)

    def ids(self) -> List[str]:
        return sorted(self._rules)

    def for_kind(self, kind: str) -> List[Rule]:
        """Rules registered for ``kind``, in rule-id order."""
        return list(self._by_kind.get(kind, ()))

    def copy(self) -> "RuleRegistry":
        return RuleRegistry(self._rules.values())


DEFAULT_REGISTRY = RuleRegistry()
