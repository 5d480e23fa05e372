"""
Built-in rules.

Importing this module registers every rule below on DEFAULT_REGISTRY.
Each check receives ``(node, ctx, decl, source)`` and yields Findings.
"""

from __future__ import annotations
from typing import Iterator, List, Optional
import re

from .flow import (
    BULK_METHODS,
    FULL,
    LOOKUP_METHODS,
    MATERIALIZE_METHODS,
    PARTIAL,
    WRITE_METHODS,
    FlowContext,
    is_ui_call,
)
from .model import (
    Binary,
    Call,
    CaseStatement,
    Constant,
    Declaration,
    Field,
    IfStatement,
    LOOP_KINDS,
    Member,
    Name,
    Node,
    Procedure,
    SourceFile,
    Unary,
    VariableDecl,
    expression_text,
    iter_statements,
)
from .rules import DEFAULT_REGISTRY, Finding, render_message


registry = DEFAULT_REGISTRY

_PLACEHOLDER_RE = re.compile(r"%\d")


def _callee_text(call: Call) -> str:
    return expression_text(call.callee)


def _receiver_text(call: Call) -> str:
    if isinstance(call.callee, Member):
        return expression_text(call.callee.target)
    return ""


def _method_text(call: Call) -> str:
    if isinstance(call.callee, (Name, Member)):
        return call.callee.name
    return call.method


# ============================================================
# ====================== ARCHITECTURE ========================
# ============================================================

@registry.rule(
    "ui-in-table",
    category="Architecture",
    severity="warning",
    kinds=("call",),
    message="%1 in table trigger %2; user interaction belongs on pages, not in the data layer",
)
def ui_in_table(node: Call, ctx: FlowContext, decl: Declaration, source: SourceFile) -> Iterator[Finding]:
    """User-interface calls inside table and field triggers."""
    if ctx.in_table_trigger and is_ui_call(node, ctx):
        trigger = ctx.member.name if ctx.member is not None else ""
        if ctx.owner:
            trigger = f"{ctx.owner}.{trigger}"
        yield Finding(node.span, (_callee_text(node), trigger))


def _is_ui_condition(expr: Node) -> bool:
    while isinstance(expr, Unary) and expr.op == "not":
        expr = expr.operand
    return isinstance(expr, Call) and expr.is_global and expr.method in ("confirm", "strmenu")


def count_business_logic(body: List[Node]) -> int:
    """Conditions that are not pure Confirm/StrMenu prompts, loops and assignments."""
    count = 0
    for stmt in iter_statements(body):
        if isinstance(stmt, IfStatement):
            if not _is_ui_condition(stmt.condition):
                count += 1
        elif isinstance(stmt, CaseStatement):
            if not _is_ui_condition(stmt.selector):
                count += 1
        elif stmt.kind in LOOP_KINDS or stmt.kind == "assignment":
            count += 1
    return count


@registry.rule(
    "rule-in-page",
    category="Architecture",
    severity="warning",
    kinds=("error",),
    message="Error raised in action %1 after %2 business-logic statement(s); move the rule into a codeunit",
    options={"max_logic_statements": 0},
)
def rule_in_page(node: Node, ctx: FlowContext, decl: Declaration, source: SourceFile) -> Iterator[Finding]:
    """Business validation written directly in page action triggers."""
    if ctx.object_kind != "page" or ctx.member_kind != "action_trigger" or ctx.member is None:
        return
    threshold = ctx.option("rule-in-page", "max_logic_statements", 0)
    logic = count_business_logic(ctx.member.body)
    if logic > threshold:
        yield Finding(node.span, (ctx.owner or ctx.member.name, logic))


# ============================================================
# ======================= PERFORMANCE ========================
# ============================================================

@registry.rule(
    "lookup-in-loop",
    category="Performance",
    severity="warning",
    kinds=("call",),
    message="%1.Get inside a loop; load the record before the loop or use SetLoadFields with a join",
)
def lookup_in_loop(node: Call, ctx: FlowContext, decl: Declaration, source: SourceFile) -> Iterator[Finding]:
    """Record lookups repeated on every loop iteration."""
    if not ctx.in_loop or node.method not in LOOKUP_METHODS:
        return
    receiver = ctx.record_receiver(node)
    if receiver is not None and ctx.loop_entry_load_state(receiver) != FULL:
        yield Finding(node.span, (_receiver_text(node),))


@registry.rule(
    "calc-fields-in-loop",
    category="Performance",
    severity="warning",
    kinds=("call",),
    message="%1.%2 inside a loop; call %1.SetAutoCalcFields before the loop instead",
)
def calc_fields_in_loop(node: Call, ctx: FlowContext, decl: Declaration, source: SourceFile) -> Iterator[Finding]:
    """FlowField calculation once per iteration."""
    if ctx.in_loop and node.method in MATERIALIZE_METHODS and ctx.record_receiver(node) is not None:
        yield Finding(node.span, (_receiver_text(node), _method_text(node)))


@registry.rule(
    "unguarded-bulk-op",
    category="Performance",
    severity="warning",
    kinds=("call",),
    message="%1.%2 without a preceding %1.IsEmpty check; bulk operations lock the table even when nothing matches",
)
def unguarded_bulk_op(node: Call, ctx: FlowContext, decl: Declaration, source: SourceFile) -> Iterator[Finding]:
    """DeleteAll/ModifyAll not guarded by IsEmpty on the same filters."""
    if node.method not in BULK_METHODS:
        return
    receiver = ctx.record_receiver(node)
    if receiver is None or ctx.is_temporary(receiver):
        return
    if not ctx.is_emptiness_checked(receiver):
        yield Finding(node.span, (_receiver_text(node), _method_text(node)))


@registry.rule(
    "partial-load-write-conflict",
    category="Performance",
    severity="warning",
    kinds=("call",),
    message="%1.%2 on a record loaded with SetLoadFields; fields outside the load set are written back as loaded",
)
def partial_load_write_conflict(node: Call, ctx: FlowContext, decl: Declaration, source: SourceFile) -> Iterator[Finding]:
    """Writes on partially loaded records."""
    if node.method not in WRITE_METHODS:
        return
    receiver = ctx.record_receiver(node)
    if receiver is not None and ctx.load_state(receiver) == PARTIAL:
        yield Finding(node.span, (_receiver_text(node), _method_text(node)))


def _count_call(expr: Node, ctx: FlowContext) -> Optional[Call]:
    if isinstance(expr, Call) and expr.method == "count" and ctx.record_receiver(expr) is not None:
        return expr
    return None


def _is_zero(expr: Node) -> bool:
    return isinstance(expr, Constant) and expr.literal_type == "number" and expr.value == "0"


@registry.rule(
    "count-for-existence",
    category="Performance",
    severity="warning",
    kinds=("binary",),
    message="%1.Count compared with 0; use %1.IsEmpty to test for existence",
)
def count_for_existence(node: Binary, ctx: FlowContext, decl: Declaration, source: SourceFile) -> Iterator[Finding]:
    """Counting records only to learn whether any exist."""
    if node.op not in ("=", "<>", ">", "<"):
        return
    for counted, other in ((node.left, node.right), (node.right, node.left)):
        call = _count_call(counted, ctx)
        if call is not None and _is_zero(other):
            yield Finding(node.span, (_receiver_text(call),))
            return


# ============================================================
# ====================== CODE QUALITY ========================
# ============================================================

MISSING_DOC_MESSAGE = "Public procedure %1 has no /// documentation comment"
DOC_MISMATCH_MESSAGE = "Documentation of %1 does not match its parameters (%2)"


def _doc_mismatch(proc: Procedure) -> Optional[str]:
    documented = sorted(name.lower() for name in proc.doc.params) if proc.doc else []
    declared = sorted(param.key for param in proc.parameters)
    if documented == declared:
        return None
    problems: List[str] = []
    missing = [param.name for param in proc.parameters if param.key not in documented]
    unknown = [name for name in (proc.doc.params if proc.doc else []) if name.lower() not in declared]
    if missing:
        problems.append("undocumented: " + ", ".join(missing))
    if unknown:
        problems.append("unknown: " + ", ".join(unknown))
    if not problems:
        problems.append("duplicate <param> tags")
    return "; ".join(problems)


@registry.rule(
    "missing-doc",
    category="CodeQuality",
    severity="warning",
    kinds=("procedure",),
    message=MISSING_DOC_MESSAGE,
)
def missing_doc(node: Procedure, ctx: FlowContext, decl: Declaration, source: SourceFile) -> Iterator[Finding]:
    """Public procedures without a matching /// block."""
    if not node.is_public:
        return
    if node.doc is None:
        yield Finding(node.span, (node.name,))
        return
    mismatch = _doc_mismatch(node)
    if mismatch:
        yield Finding(node.span, message=render_message(DOC_MISMATCH_MESSAGE, (node.name, mismatch)))


NAMING_DEFAULTS = {
    "label_suffixes": ["Lbl", "Msg", "Err", "Qst", "Tok", "Txt"],
    "error_suffix": "Err",
    "confirm_suffix": "Qst",
    "message_suffix": "Msg",
}

_SUFFIX_OPTION_BY_FUNCTION = {
    "error": "error_suffix",
    "confirm": "confirm_suffix",
    "message": "message_suffix",
}


@registry.rule(
    "naming",
    category="CodeQuality",
    severity="warning",
    kinds=("variable", "field", "declaration", "call"),
    message="%1",
    options=NAMING_DEFAULTS,
)
def naming(node: Node, ctx: FlowContext, decl: Declaration, source: SourceFile) -> Iterator[Finding]:
    """Identifier casing, label suffixes and the project prefix."""
    if isinstance(node, VariableDecl):
        if not node.quoted and not node.name[:1].isupper():
            yield Finding(node.span, (f"Variable {node.name} should start with an upper-case letter",))
        if node.type.is_label:
            suffixes = ctx.option("naming", "label_suffixes", NAMING_DEFAULTS["label_suffixes"])
            if not node.name.endswith(tuple(suffixes)):
                yield Finding(node.span, (f"Label {node.name} should end with one of {', '.join(suffixes)}",))
    elif isinstance(node, Field):
        if node.name[:1].islower():
            yield Finding(node.span, (f"Field {node.name} should not start with a lower-case letter",))
    elif isinstance(node, Declaration):
        if ctx.prefix and not node.name.lower().startswith(ctx.prefix.lower()):
            yield Finding(
                node.span, (f"Object name {node.name} does not start with the project prefix {ctx.prefix}",)
            )
    elif isinstance(node, Call):
        option = _SUFFIX_OPTION_BY_FUNCTION.get(node.method)
        if option is None or not node.is_global or not node.args or not isinstance(node.args[0], Name):
            return
        label = node.args[0]
        type_ref = ctx.type_of(label.name)
        if type_ref is None or not type_ref.is_label:
            return
        suffix = ctx.option("naming", option, NAMING_DEFAULTS[option])
        if not label.name.endswith(suffix):
            yield Finding(
                label.span,
                (f"Label {label.name} passed to {_method_text(node)} should end with {suffix}",),
            )


@registry.rule(
    "label-placeholder-comment",
    category="CodeQuality",
    severity="warning",
    kinds=("variable",),
    message="Label %1 has placeholders but no Comment explaining them",
)
def label_placeholder_comment(node: VariableDecl, ctx: FlowContext, decl: Declaration, source: SourceFile) -> Iterator[Finding]:
    """Translatable labels with %1-style placeholders need a Comment."""
    label = node.label
    if label is None or label.locked or label.comment:
        return
    if _PLACEHOLDER_RE.search(label.text):
        yield Finding(node.span, (node.name,))


@registry.rule(
    "nested-conditionals",
    category="CodeQuality",
    severity="warning",
    kinds=("if",),
    message="if statement nested %1 levels deep (maximum %2); prefer guard clauses or a helper procedure",
    options={"max_depth": 3},
)
def nested_conditionals(node: IfStatement, ctx: FlowContext, decl: Declaration, source: SourceFile) -> Iterator[Finding]:
    """Deeply nested if statements; else-if chains do not add depth."""
    max_depth = ctx.option("nested-conditionals", "max_depth", 3)
    if ctx.if_depth == max_depth + 1:
        yield Finding(node.span, (ctx.if_depth, max_depth))


# ============================================================
# ================ DATA INTEGRITY / TRANSACTIONS =============
# ============================================================

@registry.rule(
    "enum-preference",
    category="DataIntegrity",
    severity="warning",
    kinds=("field",),
    message="Field %1 is declared as Option; declare an Enum so values stay extensible",
)
def enum_preference(node: Field, ctx: FlowContext, decl: Declaration, source: SourceFile) -> Iterator[Finding]:
    """Option fields that should be enums."""
    if node.type is not None and node.type.is_option:
        yield Finding(node.span, (node.name,))


@registry.rule(
    "commit-in-loop",
    category="TransactionScope",
    severity="error",
    kinds=("call",),
    message="Commit inside %1 splits the transaction",
)
def commit_in_loop(node: Call, ctx: FlowContext, decl: Declaration, source: SourceFile) -> Iterator[Finding]:
    """Explicit commits inside loops and table triggers."""
    if not node.is_global or node.method != "commit":
        return
    if ctx.in_loop:
        yield Finding(node.span, ("a loop",))
    elif ctx.in_table_trigger:
        trigger = ctx.member.name if ctx.member is not None else "trigger"
        yield Finding(node.span, (f"table trigger {trigger}",))
