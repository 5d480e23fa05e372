"""
Declarative rules loaded from YAML.

    id: no-message-in-codeunits
    category: CodeQuality
    severity: warning
    kinds: [call]
    when: "decl.declaration_kind == 'process_unit' and method(node) == 'message'"
    message: "{{ callee(node) }} in codeunit {{ decl.name }}"
    description: Codeunits run unattended; do not show messages.

Several rules may share a file, either as separate YAML documents or as a
list (optionally under a top-level ``rules:`` key). ``when`` and the
``{{ }}`` slots of ``message`` use the restricted expression language of
``alnomic.expressions`` with ``node``, ``ctx``, ``decl`` and ``source`` bound.
"""

from __future__ import annotations
from typing import Any, Dict, Iterator, List, Optional
import re

import yaml

from .config import ConfigError
from .expressions import ExpressionEvalError, ExpressionInterpreter, base_environment
from .flow import FlowContext
from .model import SEVERITIES, Declaration, Node, SourceFile
from .rules import CATEGORIES, ENGINE_RULES, Finding, Rule, RuleRegistry


TEMPLATE_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")

NODE_KINDS = frozenset({
    "declaration", "field", "key", "enum_value", "page_field", "action", "trigger", "procedure", "variable",
    "assignment", "call_statement", "if", "case", "repeat", "while", "for", "foreach", "exit", "error",
    "block", "with", "jump", "call", "binary",
})

REQUIRED_FIELDS = ("id", "category", "severity", "kinds", "when", "message")


class ContextView:
    """Read-only face of a FlowContext handed to rule expressions."""

    def __init__(self, ctx: FlowContext) -> None:
        self._ctx = ctx

    object_kind = property(lambda self: self._ctx.object_kind)
    member_kind = property(lambda self: self._ctx.member_kind)
    member = property(lambda self: self._ctx.member)
    owner = property(lambda self: self._ctx.owner)
    loop_depth = property(lambda self: self._ctx.loop_depth)
    in_loop = property(lambda self: self._ctx.in_loop)
    in_table_trigger = property(lambda self: self._ctx.in_table_trigger)
    if_depth = property(lambda self: self._ctx.if_depth)
    commit_observed = property(lambda self: self._ctx.commit_observed)
    reachable = property(lambda self: self._ctx.reachable)
    prefix = property(lambda self: self._ctx.prefix)

    def type_of(self, name: str) -> Any:
        return self._ctx.type_of(name)

    def is_record(self, name: str) -> bool:
        return self._ctx.is_record(name)

    def is_temporary(self, name: str) -> bool:
        return self._ctx.is_temporary(name)

    def load_state(self, name: str) -> str:
        return self._ctx.load_state(name)

    def loop_entry_load_state(self, name: str) -> str:
        return self._ctx.loop_entry_load_state(name)

    def is_emptiness_checked(self, name: str) -> bool:
        return self._ctx.is_emptiness_checked(name)


class ExpressionRule:
    """The check function behind one declarative rule."""

    def __init__(self, rule_id: str, when: str, message: str, interpreter: ExpressionInterpreter) -> None:
        self.rule_id = rule_id
        self.when = when
        self.message = message
        self.interpreter = interpreter

    def __call__(self, node: Node, ctx: FlowContext, decl: Declaration, source: SourceFile) -> Iterator[Finding]:
        env = base_environment({"node": node, "ctx": ContextView(ctx), "decl": decl, "source": source})
        if not self.interpreter.evaluate(self.when, env):
            return
        span = getattr(node, "span", None) or decl.span
        yield Finding(span, message=self.render(env))

    def render(self, env: Dict[str, Any]) -> str:
        def replace(match: re.Match[str]) -> str:
            value = self.interpreter.evaluate(match.group(1), env)
            return "" if value is None else str(value)

        return TEMPLATE_PATTERN.sub(replace, self.message)


def _normalize_rule_docs(doc: Any, origin: str) -> List[Dict[str, Any]]:
    if doc is None:
        return []
    if isinstance(doc, dict) and "rules" in doc:
        doc = doc["rules"]
    if isinstance(doc, dict):
        doc = [doc]
    if not isinstance(doc, list) or not all(isinstance(item, dict) for item in doc):
        raise ConfigError(f"{origin}: expected a rule mapping or a list of rule mappings")
    return doc


def build_custom_rule(raw: Dict[str, Any], origin: str, interpreter: ExpressionInterpreter) -> Rule:
    missing = [name for name in REQUIRED_FIELDS if raw.get(name) in (None, "", [])]
    if missing:
        raise ConfigError(f"{origin}: rule is missing required field(s) {missing}")

    rule_id = str(raw["id"])
    category = str(raw["category"])
    if category not in CATEGORIES:
        raise ConfigError(f"{origin}: rule '{rule_id}' has unknown category '{category}'")
    severity = str(raw["severity"]).lower()
    if severity not in SEVERITIES:
        raise ConfigError(f"{origin}: rule '{rule_id}' has unknown severity '{raw['severity']}'")

    kinds = raw["kinds"]
    if isinstance(kinds, str):
        kinds = [kinds]
    if not isinstance(kinds, list):
        raise ConfigError(f"{origin}: 'kinds' of rule '{rule_id}' must be a list")
    unknown_kinds = sorted(str(kind) for kind in kinds if kind not in NODE_KINDS)
    if unknown_kinds:
        raise ConfigError(f"{origin}: rule '{rule_id}' names unknown node kind(s) {unknown_kinds}")

    when = str(raw["when"])
    message = str(raw["message"])
    try:
        interpreter.compile(when.strip())
        for slot in TEMPLATE_PATTERN.findall(message):
            interpreter.compile(slot.strip())
    except ExpressionEvalError as exc:
        raise ConfigError(f"{origin}: rule '{rule_id}': {exc}") from exc

    return Rule(
        id=rule_id,
        category=category,
        severity=severity,
        kinds=tuple(str(kind) for kind in kinds),
        message=message,
        check=ExpressionRule(rule_id, when, message, interpreter),
        description=str(raw.get("description", "")),
        custom=True,
    )


def load_custom_rules(paths: List[str], registry: RuleRegistry) -> RuleRegistry:
    """
    Return a copy of ``registry`` extended with the rules in ``paths``.
    Unreadable files, malformed rules and duplicate ids raise ConfigError.
    """
    extended = registry.copy()
    interpreter = ExpressionInterpreter()
    for path in paths:
        try:
            with open(path, "r", encoding="utf-8") as handle:
                documents = list(yaml.safe_load_all(handle))
        except OSError as exc:
            raise ConfigError(f"could not read rule file {path}: {exc}") from exc
        except yaml.YAMLError as exc:
            raise ConfigError(f"rule file {path} is not valid YAML: {exc}") from exc

        for doc_index, doc in enumerate(documents):
            origin = f"{path}#doc{doc_index + 1}"
            for raw in _normalize_rule_docs(doc, origin):
                rule = build_custom_rule(raw, origin, interpreter)
                if rule.id in extended or rule.id in ENGINE_RULES:
                    raise ConfigError(f"{origin}: duplicate rule id '{rule.id}'")
                extended.register(rule)
    return extended


def custom_rule_registry(paths: Optional[List[str]], registry: RuleRegistry) -> RuleRegistry:
    if not paths:
        return registry
    return load_custom_rules(paths, registry)
