"""
Typed object model for AL source files.

The parser produces a syntax tree; the builder turns it into the classes
below. Everything here is plain data: rules and the flow tracker read it,
nothing mutates it after a SourceFile has been built.

Every node class carries a ``kind`` class attribute. The evaluator dispatches
rules on that string, so a rule declares the kinds it cares about instead of
the traversal growing a conditional per rule.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Literal, Optional


# ============================================================
# ======================= SEVERITY ===========================
# ============================================================

SEVERITIES = ("info", "warning", "error")

SEVERITY_RANK: Dict[str, int] = {name: rank for rank, name in enumerate(SEVERITIES)}


def severity_at_least(severity: str, threshold: str) -> bool:
    return SEVERITY_RANK.get(severity, 0) >= SEVERITY_RANK.get(threshold, 0)


# ============================================================
# =================== SOURCE LOCATION ========================
# ============================================================

@dataclass(frozen=True)
class Span:
    line: int
    column: int
    end_line: int
    end_column: int

    @classmethod
    def covering(cls, start: "Span", end: "Span") -> "Span":
        return cls(start.line, start.column, end.end_line, end.end_column)


@dataclass
class Comment:
    text: str
    kind: Literal["line", "doc", "block"]
    span: Span


@dataclass
class SyntaxIssue:
    """A recoverable problem found while lexing, parsing or building."""
    message: str
    span: Span


class Node:
    kind = "node"


# ============================================================
# ====================== EXPRESSIONS =========================
# ============================================================

@dataclass
class Constant(Node):
    value: str
    literal_type: Literal["string", "number", "date", "boolean"]
    span: Span

    kind = "constant"


@dataclass
class Name(Node):
    name: str
    span: Span
    quoted: bool = False

    kind = "name"

    @property
    def key(self) -> str:
        return self.name.lower()


@dataclass
class Member(Node):
    target: Node
    name: str
    span: Span
    quoted: bool = False

    kind = "member"


@dataclass
class ScopeAccess(Node):
    """``Enum::"Sales Line Type"::Item`` style access."""
    target: Node
    name: str
    span: Span

    kind = "scope"


@dataclass
class Index(Node):
    target: Node
    indices: List[Node]
    span: Span

    kind = "index"


@dataclass
class Unary(Node):
    op: str
    operand: Node
    span: Span

    kind = "unary"


@dataclass
class Binary(Node):
    op: str  # lower-cased for keyword operators ("and", "in", ...)
    left: Node
    right: Node
    span: Span

    kind = "binary"


@dataclass
class SetLiteral(Node):
    items: List[Node]
    span: Span

    kind = "set"


@dataclass
class Call(Node):
    callee: Node
    args: List[Node]
    span: Span
    implicit: bool = False  # written without parentheses

    kind = "call"

    @property
    def method(self) -> str:
        """Lower-cased name of the invoked function or method."""
        if isinstance(self.callee, (Name, Member, ScopeAccess)):
            return self.callee.name.lower()
        return ""

    @property
    def receiver(self) -> Optional[str]:
        """Lower-cased variable name the method is invoked on, if it is a plain variable."""
        if isinstance(self.callee, Member) and isinstance(self.callee.target, Name):
            return self.callee.target.key
        return None

    @property
    def is_global(self) -> bool:
        return isinstance(self.callee, Name)


def expression_text(expr: Optional[Node]) -> str:
    """Render an expression back to compact AL-like text for messages."""
    if expr is None:
        return ""
    if isinstance(expr, Name):
        return f'"{expr.name}"' if expr.quoted else expr.name
    if isinstance(expr, Constant):
        if expr.literal_type == "string":
            return "'" + expr.value.replace("'", "''") + "'"
        return expr.value
    if isinstance(expr, Member):
        name = f'"{expr.name}"' if expr.quoted else expr.name
        return f"{expression_text(expr.target)}.{name}"
    if isinstance(expr, ScopeAccess):
        return f"{expression_text(expr.target)}::{expr.name}"
    if isinstance(expr, Call):
        if expr.implicit:
            return expression_text(expr.callee)
        args = ", ".join(expression_text(arg) for arg in expr.args)
        return f"{expression_text(expr.callee)}({args})"
    if isinstance(expr, Index):
        indices = ", ".join(expression_text(i) for i in expr.indices)
        return f"{expression_text(expr.target)}[{indices}]"
    if isinstance(expr, Unary):
        sep = " " if expr.op.isalpha() else ""
        return f"{expr.op}{sep}{expression_text(expr.operand)}"
    if isinstance(expr, Binary):
        return f"{expression_text(expr.left)} {expr.op} {expression_text(expr.right)}"
    if isinstance(expr, SetLiteral):
        return "[" + ", ".join(expression_text(i) for i in expr.items) + "]"
    return "<expr>"


def iter_subexpressions(expr: Optional[Node]) -> Iterator[Node]:
    """Yield ``expr`` and every expression nested inside it, outermost first."""
    if expr is None:
        return
    yield expr
    if isinstance(expr, Call):
        yield from iter_subexpressions(expr.callee)
        for arg in expr.args:
            yield from iter_subexpressions(arg)
    elif isinstance(expr, (Member, ScopeAccess)):
        yield from iter_subexpressions(expr.target)
    elif isinstance(expr, Index):
        yield from iter_subexpressions(expr.target)
        for item in expr.indices:
            yield from iter_subexpressions(item)
    elif isinstance(expr, Unary):
        yield from iter_subexpressions(expr.operand)
    elif isinstance(expr, Binary):
        yield from iter_subexpressions(expr.left)
        yield from iter_subexpressions(expr.right)
    elif isinstance(expr, SetLiteral):
        for item in expr.items:
            yield from iter_subexpressions(item)


# ============================================================
# ======================= STATEMENTS =========================
# ============================================================

@dataclass
class Assignment(Node):
    target: Node
    op: str  # ":=", "+=", "-=", "*=", "/="
    value: Node
    span: Span

    kind = "assignment"


@dataclass
class CallStatement(Node):
    call: Call
    span: Span

    kind = "call_statement"


@dataclass
class ErrorStatement(Node):
    """``Error(...)``: raises and never falls through."""
    call: Call
    span: Span

    kind = "error"

    @property
    def args(self) -> List[Node]:
        return self.call.args


@dataclass
class IfStatement(Node):
    condition: Node
    then_branch: List[Node]
    else_branch: Optional[List[Node]]
    span: Span

    kind = "if"


@dataclass
class CaseBranch:
    values: List[Node]
    body: List[Node]
    span: Span


@dataclass
class CaseStatement(Node):
    selector: Node
    branches: List[CaseBranch]
    else_branch: Optional[List[Node]]
    span: Span

    kind = "case"


@dataclass
class RepeatStatement(Node):
    body: List[Node]
    condition: Node
    span: Span

    kind = "repeat"


@dataclass
class WhileStatement(Node):
    condition: Node
    body: List[Node]
    span: Span

    kind = "while"


@dataclass
class ForStatement(Node):
    variable: Node
    start: Node
    stop: Node
    body: List[Node]
    span: Span
    downto: bool = False

    kind = "for"


@dataclass
class ForEachStatement(Node):
    variable: Node
    iterable: Node
    body: List[Node]
    span: Span

    kind = "foreach"


@dataclass
class ExitStatement(Node):
    value: Optional[Node]
    span: Span

    kind = "exit"


@dataclass
class BlockStatement(Node):
    body: List[Node]
    span: Span

    kind = "block"


@dataclass
class WithStatement(Node):
    target: Node
    body: List[Node]
    span: Span

    kind = "with"


@dataclass
class JumpStatement(Node):
    keyword: str  # "break" | "continue"
    span: Span

    kind = "jump"


LOOP_KINDS = frozenset({"repeat", "while", "for", "foreach"})


def iter_statements(statements: List[Node]) -> Iterator[Node]:
    """Depth-first walk over a statement list and every nested body."""
    for stmt in statements:
        yield stmt
        for body in child_bodies(stmt):
            yield from iter_statements(body)


def child_bodies(stmt: Node) -> List[List[Node]]:
    if isinstance(stmt, IfStatement):
        return [stmt.then_branch] + ([stmt.else_branch] if stmt.else_branch is not None else [])
    if isinstance(stmt, CaseStatement):
        bodies = [branch.body for branch in stmt.branches]
        if stmt.else_branch is not None:
            bodies.append(stmt.else_branch)
        return bodies
    if isinstance(stmt, (RepeatStatement, WhileStatement, ForStatement, ForEachStatement,
                         BlockStatement, WithStatement)):
        return [stmt.body]
    return []


# ============================================================
# ===================== DECLARATIONS =========================
# ============================================================

RECORD_LIKE_TYPES = frozenset({"record"})


@dataclass
class TypeRef:
    """
    A declared type: ``Code[20]``, ``Record "Sales Header" temporary``,
    ``Enum "Status"``, ``List of [Text]``, ``Label 'Text %1'``.
    """
    name: str
    text: str = ""
    subtype: Optional[str] = None
    length: Optional[str] = None
    temporary: bool = False
    element: Optional["TypeRef"] = None  # for array[...] of T

    @property
    def key(self) -> str:
        return self.name.lower()

    @property
    def is_record(self) -> bool:
        return self.key in RECORD_LIKE_TYPES

    @property
    def is_option(self) -> bool:
        return self.key == "option"

    @property
    def is_label(self) -> bool:
        return self.key == "label"


@dataclass
class Property:
    name: str
    value: str  # raw source text of the value
    span: Span

    @property
    def flag(self) -> Optional[bool]:
        lowered = self.value.strip().lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
        return None


@dataclass
class LabelInfo:
    text: str
    comment: Optional[str] = None
    locked: bool = False
    properties: Dict[str, str] = field(default_factory=dict)


@dataclass
class VariableDecl(Node):
    name: str
    type: TypeRef
    span: Span
    quoted: bool = False
    label: Optional[LabelInfo] = None

    kind = "variable"

    @property
    def key(self) -> str:
        return self.name.lower()


@dataclass
class Parameter:
    name: str
    type: TypeRef
    span: Span
    by_ref: bool = False

    @property
    def key(self) -> str:
        return self.name.lower()


@dataclass
class DocComment:
    """``///`` XML documentation attached to a procedure or field."""
    text: str
    span: Span
    summary: Optional[str] = None
    params: List[str] = field(default_factory=list)
    returns: Optional[str] = None


@dataclass
class Trigger(Node):
    name: str
    span: Span
    body: List[Node] = field(default_factory=list)
    variables: List[VariableDecl] = field(default_factory=list)
    parameters: List[Parameter] = field(default_factory=list)
    owner: Optional[str] = None  # field/action name for element triggers

    kind = "trigger"

    @property
    def key(self) -> str:
        return self.name.lower()


@dataclass
class Procedure(Node):
    name: str
    span: Span
    visibility: Literal["local", "internal", "protected", "public"] = "public"
    parameters: List[Parameter] = field(default_factory=list)
    return_type: Optional[TypeRef] = None
    return_name: Optional[str] = None
    doc: Optional[DocComment] = None
    attributes: List[str] = field(default_factory=list)
    variables: List[VariableDecl] = field(default_factory=list)
    body: List[Node] = field(default_factory=list)
    has_body: bool = True

    kind = "procedure"

    @property
    def is_public(self) -> bool:
        return self.visibility == "public"


@dataclass
class Field(Node):
    name: str
    span: Span
    field_id: Optional[int] = None
    type: Optional[TypeRef] = None
    quoted: bool = False
    properties: Dict[str, Property] = field(default_factory=dict)
    triggers: Dict[str, Trigger] = field(default_factory=dict)
    doc: Optional[DocComment] = None

    # Resolved from the property list.
    field_class: str = "Normal"
    calc_formula: Optional[str] = None
    table_relation: Optional[str] = None
    editable: Optional[bool] = None
    not_blank: bool = False
    option_members: List[str] = field(default_factory=list)

    kind = "field"

    @property
    def is_flowfield(self) -> bool:
        return self.field_class.lower() == "flowfield"

    @property
    def on_validate(self) -> Optional[Trigger]:
        for trigger in self.triggers.values():
            if trigger.key == "onvalidate":
                return trigger
        return None


@dataclass
class Key(Node):
    name: str
    fields: List[str]
    span: Span
    clustered: bool = False
    properties: Dict[str, Property] = field(default_factory=dict)

    kind = "key"


@dataclass
class PageField(Node):
    name: str
    source: str
    span: Span
    properties: Dict[str, Property] = field(default_factory=dict)
    triggers: Dict[str, Trigger] = field(default_factory=dict)

    kind = "page_field"


@dataclass
class Action(Node):
    name: str
    span: Span
    properties: Dict[str, Property] = field(default_factory=dict)
    triggers: Dict[str, Trigger] = field(default_factory=dict)

    kind = "action"


@dataclass
class EnumValue(Node):
    ordinal: int
    name: str
    span: Span
    properties: Dict[str, Property] = field(default_factory=dict)

    kind = "enum_value"


@dataclass
class Declaration(Node):
    """
    One top-level AL object. Subclasses are the tagged variants; the
    ``declaration_kind`` class attribute names the variant.
    """
    object_type: str  # source keyword, e.g. "table" or "tableextension"
    object_id: Optional[int]
    name: str
    span: Span
    extends: Optional[str] = None
    properties: Dict[str, Property] = field(default_factory=dict)
    variables: List[VariableDecl] = field(default_factory=list)
    triggers: Dict[str, Trigger] = field(default_factory=dict)
    procedures: List[Procedure] = field(default_factory=list)

    kind = "declaration"
    declaration_kind = "declaration"

    def property_value(self, name: str) -> Optional[str]:
        prop = self.properties.get(name.lower())
        return prop.value if prop else None


@dataclass
class Table(Declaration):
    fields: List[Field] = field(default_factory=list)
    keys: List[Key] = field(default_factory=list)
    field_modifications: List[Field] = field(default_factory=list)  # tableextension modify(...) blocks

    declaration_kind = "table"


@dataclass
class ProcessUnit(Declaration):
    declaration_kind = "process_unit"


@dataclass
class Page(Declaration):
    source_table: Optional[str] = None
    page_type: Optional[str] = None
    fields: List[PageField] = field(default_factory=list)
    actions: List[Action] = field(default_factory=list)

    declaration_kind = "page"


@dataclass
class Enumeration(Declaration):
    values: List[EnumValue] = field(default_factory=list)
    extensible: bool = False

    declaration_kind = "enumeration"


@dataclass
class SourceFile:
    path: str
    text: str
    declarations: List[Declaration] = field(default_factory=list)
    comments: List[Comment] = field(default_factory=list)

    def line_text(self, line: int) -> str:
        lines = self.text.splitlines()
        if 1 <= line <= len(lines):
            return lines[line - 1]
        return ""
