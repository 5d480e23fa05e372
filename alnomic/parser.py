"""
Recursive-descent parser for AL objects.

Object structure (sections, elements, properties, var sections, triggers,
procedures) becomes a small generic syntax tree; the object model builder
gives it meaning. Code bodies are parsed straight into the typed statement
and expression nodes of ``alnomic.model``.

Recovery: a ParseError never escapes ``parse``. Statement errors resync at
the next ``;`` or block keyword, member errors at the next ``;`` or closing
brace, object errors at the next object keyword. Every recovered error is
kept as a SyntaxIssue.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Literal, Optional, Sequence, Tuple

from .lexer import Token, number_literal_type, tokenize
from .model import (
    Assignment,
    BlockStatement,
    Call,
    CallStatement,
    CaseBranch,
    CaseStatement,
    Comment,
    Constant,
    ErrorStatement,
    ExitStatement,
    ForEachStatement,
    ForStatement,
    IfStatement,
    Index,
    JumpStatement,
    LabelInfo,
    Member,
    Name,
    Node,
    Parameter,
    RepeatStatement,
    ScopeAccess,
    SetLiteral,
    Span,
    SyntaxIssue,
    TypeRef,
    Unary,
    Binary,
    VariableDecl,
    WhileStatement,
    WithStatement,
)


OBJECT_TYPES = frozenset({
    "table", "tableextension",
    "codeunit",
    "page", "pageextension", "pagecustomization",
    "enum", "enumextension",
    "report", "reportextension",
    "query", "xmlport", "interface",
    "permissionset", "permissionsetextension",
    "profile", "controladdin", "entitlement", "dotnet",
})

VISIBILITY_WORDS = ("local", "internal", "protected")

ASSIGNMENT_OPS = (":=", "+=", "-=", "*=", "/=")
RELATIONAL_OPS = ("=", "<>", "<", ">", "<=", ">=")
ADDITIVE_OPS = ("+", "-")
ADDITIVE_WORDS = ("or", "xor")
MULTIPLICATIVE_OPS = ("*", "/")
MULTIPLICATIVE_WORDS = ("div", "mod", "and")

RESERVED_WORDS = frozenset({
    "begin", "end", "if", "then", "else", "case", "of", "repeat", "until",
    "while", "do", "for", "foreach", "to", "downto", "exit", "with", "var",
})

# Record/system methods that AL lets you call without parentheses.
IMPLICIT_CALL_METHODS = frozenset({
    "get", "isempty", "findset", "findfirst", "findlast", "find", "next", "count",
    "countapprox", "insert", "modify", "delete", "deleteall", "modifyall",
    "reset", "init", "locktable", "istemporary", "getfilters", "hasfilter",
})

TYPES_WITH_SUBTYPE = frozenset({
    "record", "codeunit", "page", "report", "query", "xmlport", "enum",
    "interface", "testpage", "testrequestpage", "dotnet", "controladdin",
})


class ParseError(Exception):
    def __init__(self, message: str, span: Span) -> None:
        super().__init__(message)
        self.span = span


# ============================================================
# ====================== SYNTAX TREE =========================
# ============================================================

@dataclass
class PropertyNode:
    name: str
    value: str
    span: Span


@dataclass
class CodeNode:
    """A trigger or procedure as written, before the builder classifies it."""
    kind: Literal["trigger", "procedure"]
    name: str
    span: Span
    visibility: str = "public"
    attributes: List[str] = field(default_factory=list)
    parameters: List[Parameter] = field(default_factory=list)
    return_type: Optional[TypeRef] = None
    return_name: Optional[str] = None
    variables: List[VariableDecl] = field(default_factory=list)
    body: List[Node] = field(default_factory=list)
    has_body: bool = False
    doc: List[Comment] = field(default_factory=list)


@dataclass
class ElementNode:
    """
    ``keyword(arg; arg) { ... }`` or ``keyword { ... }``: sections such as
    ``fields``/``keys``/``layout``/``actions`` and the elements inside them.
    ``args`` holds the raw tokens of each ``;``-separated argument.
    """
    keyword: str
    span: Span
    args: List[List[Token]] = field(default_factory=list)
    properties: List[PropertyNode] = field(default_factory=list)
    children: List["ElementNode"] = field(default_factory=list)
    codes: List[CodeNode] = field(default_factory=list)
    variables: List[VariableDecl] = field(default_factory=list)
    doc: List[Comment] = field(default_factory=list)


@dataclass
class ObjectNode(ElementNode):
    object_id: Optional[int] = None
    name: str = ""
    extends: Optional[str] = None
    implements: List[str] = field(default_factory=list)


@dataclass
class SyntaxTree:
    objects: List[ObjectNode] = field(default_factory=list)
    comments: List[Comment] = field(default_factory=list)
    issues: List[SyntaxIssue] = field(default_factory=list)


def describe(tok: Token) -> str:
    if tok.kind == "eof":
        return "end of file"
    return f"'{tok.text}'"


def doc_comments(tok: Optional[Token]) -> List[Comment]:
    """The ``///`` comments immediately preceding ``tok`` (a contiguous trailing run)."""
    if tok is None:
        return []
    run: List[Comment] = []
    for comment in reversed(tok.leading):
        if comment.kind != "doc":
            break
        run.append(comment)
    run.reverse()
    return run


def tokens_text(tokens: Sequence[Token], source: str) -> str:
    if not tokens:
        return ""
    return source[tokens[0].start:tokens[-1].end]


# ============================================================
# ========================= TYPES ============================
# ============================================================

def split_tokens(tokens: Sequence[Token], separator: str) -> List[List[Token]]:
    """Split on ``separator`` at bracket depth zero."""
    parts: List[List[Token]] = [[]]
    depth = 0
    for tok in tokens:
        if tok.is_op("(", "["):
            depth += 1
        elif tok.is_op(")", "]"):
            depth -= 1
        elif depth == 0 and tok.is_op(separator):
            parts.append([])
            continue
        parts[-1].append(tok)
    return [part for part in parts if part]


def parse_type(tokens: Sequence[Token], source: str) -> Tuple[TypeRef, Optional[LabelInfo]]:
    """
    Interpret the tokens after ``Name:`` in a declaration.
    Returns the TypeRef and, for ``Label`` declarations, the label details.
    """
    first = tokens[0]
    text = tokens_text(tokens, source)
    type_ref = TypeRef(name=first.value, text=text)
    label: Optional[LabelInfo] = None
    rest = list(tokens[1:])

    if first.is_keyword("label"):
        label = _parse_label(rest, source)
        return type_ref, label

    if first.is_keyword("array"):
        of_index = next((i for i, tok in enumerate(rest) if tok.is_keyword("of")), None)
        if of_index is not None:
            bracket = rest[:of_index]
            if len(bracket) >= 2 and bracket[0].is_op("["):
                type_ref.length = tokens_text(bracket[1:-1], source)
            element_tokens = rest[of_index + 1:]
            if element_tokens:
                type_ref.element = parse_type(element_tokens, source)[0]
        return type_ref, None

    if rest and rest[0].is_op("["):
        closing = next((i for i, tok in enumerate(rest) if tok.is_op("]")), len(rest))
        type_ref.length = tokens_text(rest[1:closing], source)
    elif first.lower in TYPES_WITH_SUBTYPE and rest and rest[0].kind in ("ident", "qident", "number"):
        type_ref.subtype = rest[0].value

    if len(tokens) > 1 and tokens[-1].is_keyword("temporary"):
        type_ref.temporary = True
    return type_ref, None


def _parse_label(tokens: List[Token], source: str) -> LabelInfo:
    parts = split_tokens(tokens, ",")
    text = ""
    properties: Dict[str, str] = {}
    if parts and parts[0][0].kind == "string":
        text = parts[0][0].value
        parts = parts[1:]
    for part in parts:
        if len(part) >= 3 and part[1].is_op("="):
            value_tokens = part[2:]
            if len(value_tokens) == 1 and value_tokens[0].kind == "string":
                value = value_tokens[0].value
            else:
                value = tokens_text(value_tokens, source)
            properties[part[0].value.lower()] = value
    return LabelInfo(
        text=text,
        comment=properties.get("comment"),
        locked=properties.get("locked", "").strip().lower() == "true",
        properties=properties,
    )


# ============================================================
# ======================== PARSER ============================
# ============================================================

class Parser:
    def __init__(self, source: str, tokens: List[Token], issues: Optional[List[SyntaxIssue]] = None) -> None:
        self.source = source
        self.tokens = tokens
        self.pos = 0
        self.issues: List[SyntaxIssue] = list(issues or [])
        self._last = tokens[0]
        self._statement_parsers: Dict[str, Callable[[], Node]] = {
            "begin": self._parse_block,
            "if": self._parse_if,
            "case": self._parse_case,
            "repeat": self._parse_repeat,
            "while": self._parse_while,
            "for": self._parse_for,
            "foreach": self._parse_foreach,
            "exit": self._parse_exit,
            "with": self._parse_with,
            "asserterror": self._parse_asserterror,
        }

    # ----------------------------------------------------------
    # token helpers
    # ----------------------------------------------------------

    @property
    def tok(self) -> Token:
        return self.tokens[self.pos]

    def peek(self, offset: int = 1) -> Token:
        return self.tokens[min(self.pos + offset, len(self.tokens) - 1)]

    def advance(self) -> Token:
        tok = self.tokens[self.pos]
        if tok.kind != "eof":
            self.pos += 1
            self._last = tok
        return tok

    def at_keyword(self, *words: str) -> bool:
        return self.tok.is_keyword(*words)

    def at_op(self, *ops: str) -> bool:
        return self.tok.is_op(*ops)

    def accept_op(self, op: str) -> bool:
        if self.tok.is_op(op):
            self.advance()
            return True
        return False

    def accept_keyword(self, word: str) -> bool:
        if self.tok.is_keyword(word):
            self.advance()
            return True
        return False

    def expect_op(self, op: str, context: str) -> Token:
        if not self.tok.is_op(op):
            raise ParseError(f"expected '{op}' {context}, found {describe(self.tok)}", self.tok.span)
        return self.advance()

    def expect_keyword(self, word: str, context: str) -> Token:
        if not self.tok.is_keyword(word):
            raise ParseError(f"expected '{word}' {context}, found {describe(self.tok)}", self.tok.span)
        return self.advance()

    def expect_name(self, context: str) -> Token:
        if self.tok.kind not in ("ident", "qident"):
            raise ParseError(f"expected a name {context}, found {describe(self.tok)}", self.tok.span)
        return self.advance()

    def span_from(self, start: Token) -> Span:
        if self._last.start < start.start:
            return start.span
        return Span.covering(start.span, self._last.span)

    def error(self, message: str, span: Span) -> None:
        self.issues.append(SyntaxIssue(message, span))

    # ----------------------------------------------------------
    # objects
    # ----------------------------------------------------------

    def parse(self) -> SyntaxTree:
        objects: List[ObjectNode] = []
        while self.tok.kind != "eof":
            if self.at_keyword("namespace", "using"):
                self._skip_past_semicolon()
                continue
            start_pos = self.pos
            if self.tok.lower in OBJECT_TYPES:
                try:
                    objects.append(self._parse_object())
                except ParseError as exc:
                    self.error(str(exc), exc.span)
                    self._sync_object(start_pos)
                continue
            self.error(f"expected an object declaration, found {describe(self.tok)}", self.tok.span)
            self._sync_object(start_pos)
        return SyntaxTree(objects=objects, issues=self.issues)

    def _skip_past_semicolon(self) -> None:
        while self.tok.kind != "eof" and not self.accept_op(";"):
            self.advance()

    def _sync_object(self, start_pos: int) -> None:
        if self.pos == start_pos:
            self.advance()
        depth = 0
        while self.tok.kind != "eof":
            if self.at_op("{"):
                depth += 1
            elif self.at_op("}"):
                depth = max(depth - 1, 0)
            elif depth == 0 and self.tok.lower in OBJECT_TYPES:
                return
            self.advance()

    def _parse_object(self) -> ObjectNode:
        start = self.advance()
        node = ObjectNode(keyword=start.lower, span=start.span, doc=doc_comments(start))

        if self.tok.kind == "number":
            number = self.advance()
            node.object_id = int(number.value) if number.value.isdigit() else None
        if self.tok.kind in ("ident", "qident") and not self.at_keyword("extends", "implements"):
            node.name = self.advance().value

        while not self.at_op("{"):
            if self.accept_keyword("extends"):
                node.extends = self.expect_name("after 'extends'").value
            elif self.accept_keyword("implements"):
                node.implements.append(self.expect_name("after 'implements'").value)
                while self.accept_op(","):
                    node.implements.append(self.expect_name("after ','").value)
            else:
                raise ParseError(
                    f"unexpected {describe(self.tok)} in {node.keyword} header", self.tok.span
                )

        self.advance()
        self._parse_members(node)
        node.span = self.span_from(start)
        return node

    # ----------------------------------------------------------
    # members
    # ----------------------------------------------------------

    def _parse_members(self, container: ElementNode) -> None:
        """Parse ``{ ... }`` contents up to and including the closing brace."""
        attributes: List[str] = []
        lead: Optional[Token] = None
        while True:
            tok = self.tok
            if tok.kind == "eof":
                self.error(f"missing '}}' to close {container.keyword}", tok.span)
                return
            if tok.is_op("}"):
                self.advance()
                return
            if tok.is_op(";"):
                self.advance()
                continue

            start_pos = self.pos
            try:
                if tok.is_op("["):
                    if not attributes:
                        lead = tok
                    attributes.append(self._parse_attribute())
                    continue
                if tok.is_keyword("var") or (tok.is_keyword("protected") and self.peek().is_keyword("var")):
                    if tok.is_keyword("protected"):
                        self.advance()
                    self.advance()
                    container.variables.extend(self._parse_var_section())
                elif tok.is_keyword("trigger", "procedure") or (
                    tok.is_keyword(*VISIBILITY_WORDS) and self.peek().is_keyword("procedure")
                ):
                    container.codes.append(self._parse_code(attributes, lead))
                elif tok.kind in ("ident", "qident") and self.peek().is_op("="):
                    container.properties.append(self._parse_property())
                elif tok.kind == "ident" and self.peek().is_op("(", "{"):
                    container.children.append(self._parse_element())
                else:
                    raise ParseError(f"unexpected {describe(tok)} in {container.keyword}", tok.span)
            except ParseError as exc:
                self.error(str(exc), exc.span)
                self._sync_member(start_pos)
            attributes = []
            lead = None

    def _sync_member(self, start_pos: int) -> None:
        if self.pos == start_pos and not self.at_keyword("begin", "case", "repeat") and not self.at_op("{"):
            self.advance()
        braces = 0
        closers: List[str] = []
        while self.tok.kind != "eof":
            tok = self.tok
            if tok.is_op("{"):
                braces += 1
            elif tok.is_op("}"):
                if braces == 0:
                    return
                braces -= 1
            elif tok.is_keyword("begin", "case"):
                closers.append("end")
            elif tok.is_keyword("repeat"):
                closers.append("until")
            elif closers and tok.is_keyword(closers[-1]):
                closers.pop()
            elif braces == 0 and not closers and tok.is_op(";"):
                self.advance()
                return
            self.advance()

    def _parse_attribute(self) -> str:
        start = self.advance()
        depth = 1
        first = self.tok
        while depth and self.tok.kind != "eof":
            if self.at_op("["):
                depth += 1
            elif self.at_op("]"):
                depth -= 1
                if depth == 0:
                    break
            self.advance()
        if self.tok.kind == "eof":
            raise ParseError("unterminated attribute", start.span)
        text = self.source[first.start:self.tok.start].strip()
        self.advance()
        return text

    def _parse_property(self) -> PropertyNode:
        name = self.advance()
        self.advance()  # '='
        value_tokens = self._collect(stop_ops=(";",))
        if not value_tokens:
            raise ParseError(f"property '{name.value}' has no value", name.span)
        if not self.accept_op(";") and not self.at_op("}"):
            raise ParseError(f"expected ';' after property '{name.value}'", self.tok.span)
        return PropertyNode(name=name.value, value=tokens_text(value_tokens, self.source), span=self.span_from(name))

    def _parse_element(self) -> ElementNode:
        keyword = self.advance()
        node = ElementNode(keyword=keyword.lower, span=keyword.span, doc=doc_comments(keyword))
        if self.accept_op("("):
            node.args = self._parse_element_args(keyword)
        if self.accept_op("{"):
            self._parse_members(node)
        self.accept_op(";")
        node.span = self.span_from(keyword)
        return node

    def _parse_element_args(self, keyword: Token) -> List[List[Token]]:
        tokens: List[Token] = []
        depth = 0
        while True:
            tok = self.tok
            if tok.kind == "eof" or tok.is_op("{", "}"):
                raise ParseError(f"missing ')' in {keyword.value}(...)", keyword.span)
            if tok.is_op("(", "["):
                depth += 1
            elif tok.is_op(")", "]"):
                if depth == 0 and tok.is_op(")"):
                    self.advance()
                    break
                depth -= 1
            tokens.append(self.advance())
        return split_tokens(tokens, ";")

    def _collect(self, stop_ops: Tuple[str, ...], stop_words: Tuple[str, ...] = ()) -> List[Token]:
        """Tokens up to (not including) a stop token at bracket depth zero."""
        tokens: List[Token] = []
        depth = 0
        while self.tok.kind != "eof":
            tok = self.tok
            if depth == 0 and (tok.is_op(*stop_ops) or tok.is_keyword(*stop_words) or tok.is_op("}")):
                break
            if tok.is_op("(", "["):
                depth += 1
            elif tok.is_op(")", "]"):
                if depth == 0:
                    break
                depth -= 1
            tokens.append(self.advance())
        return tokens

    # ----------------------------------------------------------
    # variables, triggers, procedures
    # ----------------------------------------------------------

    def _parse_var_section(self) -> List[VariableDecl]:
        variables: List[VariableDecl] = []
        while self.tok.kind in ("ident", "qident") and self.peek().is_op(":", ","):
            if self.at_keyword("begin", "var", "trigger", "procedure", *VISIBILITY_WORDS):
                break
            start_pos = self.pos
            try:
                variables.extend(self._parse_variable())
            except ParseError as exc:
                self.error(str(exc), exc.span)
                if self.pos == start_pos:
                    self.advance()
                while self.tok.kind != "eof" and not self.at_keyword("begin") and not self.at_op("}"):
                    if self.accept_op(";"):
                        break
                    self.advance()
        return variables

    def _parse_variable(self) -> List[VariableDecl]:
        names = [self.expect_name("in variable declaration")]
        while self.accept_op(","):
            names.append(self.expect_name("after ','"))
        self.expect_op(":", f"after variable '{names[0].value}'")
        type_tokens = self._collect(
            stop_ops=(";",), stop_words=("begin", "var", "trigger", "procedure") + VISIBILITY_WORDS
        )
        if not type_tokens:
            raise ParseError(f"expected a type for variable '{names[0].value}'", self.tok.span)
        if not self.accept_op(";"):
            self.error(f"expected ';' after declaration of '{names[0].value}'", self.tok.span)
        type_ref, label = parse_type(type_tokens, self.source)
        end = self._last.span
        return [
            VariableDecl(
                name=name.value,
                type=type_ref,
                span=Span.covering(name.span, end),
                quoted=name.kind == "qident",
                label=label,
            )
            for name in names
        ]

    def _parse_code(self, attributes: List[str], lead: Optional[Token]) -> CodeNode:
        start = self.tok
        docs = doc_comments(lead) + (doc_comments(start) if lead is not start else [])
        visibility = "public"
        if start.is_keyword(*VISIBILITY_WORDS):
            visibility = self.advance().lower
        keyword = self.advance()
        name = self.expect_name(f"after '{keyword.value}'")
        node = CodeNode(
            kind="trigger" if keyword.is_keyword("trigger") else "procedure",
            name=name.value,
            span=start.span,
            visibility=visibility,
            attributes=list(attributes),
            doc=docs,
        )
        if self.accept_op("("):
            node.parameters = self._parse_parameters()
        if self.tok.kind in ("ident", "qident") and self.peek().is_op(":") and not self.at_keyword("var"):
            node.return_name = self.advance().value
        if self.accept_op(":"):
            type_tokens = self._collect(stop_ops=(";",), stop_words=("var", "begin"))
            if not type_tokens:
                raise ParseError(f"expected a return type for '{name.value}'", self.tok.span)
            node.return_type = parse_type(type_tokens, self.source)[0]
        self.accept_op(";")
        if self.accept_keyword("var"):
            node.variables = self._parse_var_section()
        if self.at_keyword("begin"):
            node.body = self._parse_compound()
            node.has_body = True
            self.accept_op(";")
        node.span = self.span_from(start)
        return node

    def _parse_parameters(self) -> List[Parameter]:
        parameters: List[Parameter] = []
        while not self.at_op(")"):
            if self.tok.kind == "eof":
                raise ParseError("missing ')' after parameter list", self.tok.span)
            by_ref = False
            if self.at_keyword("var") and self.peek().kind in ("ident", "qident"):
                self.advance()
                by_ref = True
            names = [self.expect_name("in parameter list")]
            while self.accept_op(","):
                names.append(self.expect_name("after ','"))
            self.expect_op(":", f"after parameter '{names[0].value}'")
            type_tokens = self._collect(stop_ops=(";",))
            if not type_tokens:
                raise ParseError(f"expected a type for parameter '{names[0].value}'", self.tok.span)
            type_ref = parse_type(type_tokens, self.source)[0]
            for name in names:
                parameters.append(Parameter(name=name.value, type=type_ref, span=name.span, by_ref=by_ref))
            if not self.accept_op(";"):
                break
        self.expect_op(")", "to close parameter list")
        return parameters

    # ----------------------------------------------------------
    # statements
    # ----------------------------------------------------------

    def _parse_compound(self) -> List[Node]:
        begin = self.expect_keyword("begin", "to open a code block")
        body = self._parse_statement_list(("end",))
        if not self.accept_keyword("end"):
            self.error(f"missing 'end' for 'begin' on line {begin.span.line}", self.tok.span)
        return body

    def _parse_statement_list(self, terminators: Tuple[str, ...]) -> List[Node]:
        statements: List[Node] = []
        while True:
            tok = self.tok
            if tok.kind == "eof" or tok.is_op("}") or tok.is_keyword(*terminators):
                break
            if tok.is_op(";"):
                self.advance()
                continue
            start_pos = self.pos
            try:
                statements.append(self._parse_statement())
            except ParseError as exc:
                self.error(str(exc), exc.span)
                self._sync_statement(start_pos, terminators)
                continue
            if self.accept_op(";"):
                continue
            if self.tok.kind == "eof" or self.at_op("}") or self.at_keyword(*terminators):
                break
            self.error(f"expected ';' after statement, found {describe(self.tok)}", self.tok.span)
        return statements

    def _sync_statement(self, start_pos: int, terminators: Tuple[str, ...]) -> None:
        if self.pos == start_pos and not self.at_keyword("begin", "case", "repeat"):
            self.advance()
        closers: List[str] = []
        while self.tok.kind != "eof" and not self.at_op("}"):
            tok = self.tok
            if tok.is_keyword("begin", "case"):
                closers.append("end")
            elif tok.is_keyword("repeat"):
                closers.append("until")
            elif closers and tok.is_keyword(closers[-1]):
                closers.pop()
            elif not closers:
                if tok.is_op(";"):
                    self.advance()
                    return
                if tok.is_keyword("end", "until", "else", *terminators):
                    return
            self.advance()

    def _parse_statement(self) -> Node:
        tok = self.tok
        if tok.kind == "ident":
            parser = self._statement_parsers.get(tok.lower)
            if parser is not None:
                return parser()
            if tok.is_keyword("break", "continue") and (
                self.peek().is_op(";") or self.peek().is_keyword("end", "until", "else")
            ):
                self.advance()
                return JumpStatement(keyword=tok.lower, span=tok.span)
            if tok.lower in RESERVED_WORDS:
                raise ParseError(f"unexpected {describe(tok)}", tok.span)
        return self._parse_simple_statement()

    def _parse_simple_statement(self) -> Node:
        start = self.tok
        expr = self._parse_postfix()
        if self.tok.is_op(*ASSIGNMENT_OPS):
            op = self.advance().text
            value = self._parse_expression()
            return Assignment(target=expr, op=op, value=value, span=self.span_from(start))
        if isinstance(expr, Call):
            call = expr
        elif isinstance(expr, (Name, Member, ScopeAccess)):
            call = Call(callee=expr, args=[], span=expr.span, implicit=True)
        else:
            raise ParseError("expression cannot be used as a statement", expr.span)
        span = self.span_from(start)
        if call.is_global and call.method == "error":
            return ErrorStatement(call=call, span=span)
        return CallStatement(call=call, span=span)

    def _parse_branch(self) -> List[Node]:
        """The single statement after then/else/do; a begin..end block is unwrapped."""
        if self.at_op(";", "}") or self.at_keyword("else", "end", "until") or self.tok.kind == "eof":
            return []
        stmt = self._parse_statement()
        if isinstance(stmt, BlockStatement):
            return stmt.body
        return [stmt]

    def _parse_block(self) -> Node:
        start = self.tok
        body = self._parse_compound()
        return BlockStatement(body=body, span=self.span_from(start))

    def _parse_if(self) -> Node:
        start = self.advance()
        condition = self._parse_expression()
        self.expect_keyword("then", "after 'if' condition")
        then_branch = self._parse_branch()
        else_branch: Optional[List[Node]] = None
        if self.accept_keyword("else"):
            else_branch = self._parse_branch()
        return IfStatement(
            condition=condition, then_branch=then_branch, else_branch=else_branch, span=self.span_from(start)
        )

    def _parse_case(self) -> Node:
        start = self.advance()
        selector = self._parse_expression()
        self.expect_keyword("of", "after 'case' selector")
        branches: List[CaseBranch] = []
        else_branch: Optional[List[Node]] = None
        while not self.at_keyword("end"):
            if self.tok.kind == "eof" or self.at_op("}"):
                raise ParseError(f"missing 'end' for 'case' on line {start.span.line}", self.tok.span)
            if self.accept_op(";"):
                continue
            if self.accept_keyword("else"):
                else_branch = self._parse_statement_list(("end",))
                break
            branch_start = self.tok
            values = [self._parse_expression()]
            while self.accept_op(","):
                values.append(self._parse_expression())
            self.expect_op(":", "after case value")
            body = self._parse_branch()
            branches.append(CaseBranch(values=values, body=body, span=self.span_from(branch_start)))
            if not self.accept_op(";") and not self.at_keyword("end", "else"):
                raise ParseError(f"expected ';' after case branch, found {describe(self.tok)}", self.tok.span)
        self.expect_keyword("end", "to close 'case'")
        return CaseStatement(
            selector=selector, branches=branches, else_branch=else_branch, span=self.span_from(start)
        )

    def _parse_repeat(self) -> Node:
        start = self.advance()
        body = self._parse_statement_list(("until",))
        self.expect_keyword("until", f"to close 'repeat' on line {start.span.line}")
        condition = self._parse_expression()
        return RepeatStatement(body=body, condition=condition, span=self.span_from(start))

    def _parse_while(self) -> Node:
        start = self.advance()
        condition = self._parse_expression()
        self.expect_keyword("do", "after 'while' condition")
        body = self._parse_branch()
        return WhileStatement(condition=condition, body=body, span=self.span_from(start))

    def _parse_for(self) -> Node:
        start = self.advance()
        name = self.expect_name("after 'for'")
        variable = Name(name=name.value, span=name.span, quoted=name.kind == "qident")
        self.expect_op(":=", "in 'for' statement")
        first = self._parse_expression()
        downto = False
        if self.accept_keyword("downto"):
            downto = True
        else:
            self.expect_keyword("to", "in 'for' statement")
        stop = self._parse_expression()
        self.expect_keyword("do", "in 'for' statement")
        body = self._parse_branch()
        return ForStatement(
            variable=variable, start=first, stop=stop, body=body, span=self.span_from(start), downto=downto
        )

    def _parse_foreach(self) -> Node:
        start = self.advance()
        name = self.expect_name("after 'foreach'")
        variable = Name(name=name.value, span=name.span, quoted=name.kind == "qident")
        self.expect_keyword("in", "in 'foreach' statement")
        iterable = self._parse_expression()
        self.expect_keyword("do", "in 'foreach' statement")
        body = self._parse_branch()
        return ForEachStatement(variable=variable, iterable=iterable, body=body, span=self.span_from(start))

    def _parse_exit(self) -> Node:
        start = self.advance()
        value: Optional[Node] = None
        if self.accept_op("("):
            if not self.at_op(")"):
                value = self._parse_expression()
            self.expect_op(")", "after exit value")
        return ExitStatement(value=value, span=self.span_from(start))

    def _parse_with(self) -> Node:
        start = self.advance()
        target = self._parse_expression()
        self.expect_keyword("do", "after 'with' target")
        body = self._parse_branch()
        return WithStatement(target=target, body=body, span=self.span_from(start))

    def _parse_asserterror(self) -> Node:
        start = self.advance()
        inner = self._parse_statement()
        return BlockStatement(body=[inner], span=self.span_from(start))

    # ----------------------------------------------------------
    # expressions
    # ----------------------------------------------------------

    def _parse_expression(self) -> Node:
        start = self.tok
        left = self._parse_relational()
        if self.accept_op(".."):
            if self.at_op(",", "]", ":", ")"):
                right: Node = Constant(value="", literal_type="string", span=self._last.span)
            else:
                right = self._parse_relational()
            left = Binary(op="..", left=left, right=right, span=self.span_from(start))
        return left

    def _parse_relational(self) -> Node:
        start = self.tok
        left = self._parse_additive()
        while self.at_op(*RELATIONAL_OPS) or self.at_keyword("in"):
            op = self.advance()
            right = self._parse_additive()
            left = Binary(op=op.lower or op.text, left=left, right=right, span=self.span_from(start))
        return left

    def _parse_additive(self) -> Node:
        start = self.tok
        left = self._parse_multiplicative()
        while self.at_op(*ADDITIVE_OPS) or self.at_keyword(*ADDITIVE_WORDS):
            op = self.advance()
            right = self._parse_multiplicative()
            left = Binary(op=op.lower or op.text, left=left, right=right, span=self.span_from(start))
        return left

    def _parse_multiplicative(self) -> Node:
        start = self.tok
        left = self._parse_unary()
        while self.at_op(*MULTIPLICATIVE_OPS) or self.at_keyword(*MULTIPLICATIVE_WORDS):
            op = self.advance()
            right = self._parse_unary()
            left = Binary(op=op.lower or op.text, left=left, right=right, span=self.span_from(start))
        return left

    def _parse_unary(self) -> Node:
        if self.at_keyword("not") or self.at_op("-", "+"):
            op = self.advance()
            operand = self._parse_unary()
            return Unary(op=op.lower or op.text, operand=operand, span=self.span_from(op))
        return self._parse_postfix()

    def _parse_postfix(self) -> Node:
        start = self.tok
        expr = self._parse_primary()
        while True:
            if self.accept_op("."):
                name = self.expect_name("after '.'")
                quoted = name.kind == "qident"
                expr = Member(target=expr, name=name.value, span=self.span_from(start), quoted=quoted)
                if not quoted and name.lower in IMPLICIT_CALL_METHODS and not self.at_op("("):
                    expr = Call(callee=expr, args=[], span=expr.span, implicit=True)
            elif self.accept_op("::"):
                if self.tok.kind not in ("ident", "qident", "number"):
                    raise ParseError(f"expected a name after '::', found {describe(self.tok)}", self.tok.span)
                expr = ScopeAccess(target=expr, name=self.advance().value, span=self.span_from(start))
            elif self.accept_op("("):
                args = self._parse_arguments(")")
                expr = Call(callee=expr, args=args, span=self.span_from(start))
            elif self.at_op("[") and not isinstance(expr, Constant):
                self.advance()
                indices = self._parse_arguments("]")
                expr = Index(target=expr, indices=indices, span=self.span_from(start))
            else:
                return expr

    def _parse_arguments(self, closing: str) -> List[Node]:
        args: List[Node] = []
        if self.accept_op(closing):
            return args
        args.append(self._parse_expression())
        while self.accept_op(","):
            args.append(self._parse_expression())
        self.expect_op(closing, "to close argument list")
        return args

    def _parse_primary(self) -> Node:
        tok = self.tok
        if tok.kind == "number":
            self.advance()
            return Constant(value=tok.text, literal_type=number_literal_type(tok.text), span=tok.span)  # type: ignore[arg-type]
        if tok.kind == "string":
            self.advance()
            return Constant(value=tok.value, literal_type="string", span=tok.span)
        if tok.kind == "qident":
            self.advance()
            return Name(name=tok.value, span=tok.span, quoted=True)
        if tok.kind == "ident":
            if tok.lower in ("true", "false"):
                self.advance()
                return Constant(value=tok.lower, literal_type="boolean", span=tok.span)
            if tok.lower in RESERVED_WORDS:
                raise ParseError(f"expected an expression, found {describe(tok)}", tok.span)
            self.advance()
            return Name(name=tok.value, span=tok.span)
        if tok.is_op("("):
            self.advance()
            inner = self._parse_expression()
            self.expect_op(")", "to close parenthesis")
            return inner
        if tok.is_op("["):
            self.advance()
            items = self._parse_arguments("]")
            return SetLiteral(items=items, span=self.span_from(tok))
        raise ParseError(f"expected an expression, found {describe(tok)}", tok.span)


def parse(source: str) -> SyntaxTree:
    """Lex and parse ``source``; never raises on malformed input."""
    tokens, comments, issues = tokenize(source)
    tree = Parser(source, tokens, issues).parse()
    tree.comments = comments
    return tree
