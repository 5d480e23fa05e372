"""
Tokenizer for AL source text.

Comments are not tokens: each token carries the comments that appeared
between it and the previous token (``leading``) so the parser can attach
``///`` documentation blocks to the declaration that follows them.
Preprocessor lines (``#if``, ``#region``, ``#pragma``) are skipped as trivia.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Literal, Tuple
import re

from .model import Comment, Span, SyntaxIssue


TokenKind = Literal["ident", "qident", "string", "number", "op", "eof"]


@dataclass
class Token:
    kind: TokenKind
    text: str     # exact source text
    value: str    # unquoted / unescaped value
    span: Span
    start: int = 0  # offsets into the source text
    end: int = 0
    leading: List[Comment] = field(default_factory=list)

    @property
    def lower(self) -> str:
        return self.value.lower() if self.kind == "ident" else ""

    def is_keyword(self, *words: str) -> bool:
        return self.kind == "ident" and self.value.lower() in words

    def is_op(self, *ops: str) -> bool:
        return self.kind == "op" and self.text in ops


_TOKEN_RE = re.compile(
    r"""
      (?P<newline>\r?\n)
    | (?P<ws>[ \t\f\v\r]+)
    | (?P<doc>///[^\n]*)
    | (?P<line>//[^\n]*)
    | (?P<block>/\*.*?\*/)
    | (?P<open_block>/\*)
    | (?P<directive>\#[^\n]*)
    | (?P<number>\d+(?:\.\d+)?(?:[dD][tT]|[dD]|[tT]|[lL])?(?![\w]))
    | (?P<ident>[^\W\d]\w*)
    | (?P<qident>"[^"\n]*")
    | (?P<open_qident>"[^"\n]*)
    | (?P<string>'(?:[^'\n]|'')*')
    | (?P<open_string>'(?:[^'\n]|'')*)
    | (?P<op>:=|\+=|-=|\*=|/=|::|\.\.|<>|<=|>=|[-+*/=<>()\[\]{},;:.@?&|])
    """,
    re.VERBOSE | re.DOTALL,
)

_DATE_SUFFIXES = ("dt", "d", "t")


class Lexer:
    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens: List[Token] = []
        self.comments: List[Comment] = []
        self.issues: List[SyntaxIssue] = []
        self._line = 1
        self._line_start = 0

    def tokenize(self) -> Tuple[List[Token], List[Comment], List[SyntaxIssue]]:
        pos = 0
        pending: List[Comment] = []
        length = len(self.text)

        while pos < length:
            match = _TOKEN_RE.match(self.text, pos)
            if match is None:
                span = self._span(pos, pos + 1)
                self.issues.append(SyntaxIssue(f"unexpected character {self.text[pos]!r}", span))
                pos += 1
                continue

            group = match.lastgroup
            text = match.group(0)
            end = match.end()
            span = self._span(pos, end)

            if group == "newline":
                self._advance_line(end)
            elif group in ("ws", "directive"):
                pass
            elif group in ("doc", "line", "block"):
                comment_kind = "doc" if group == "doc" else ("block" if group == "block" else "line")
                comment = Comment(text=text, kind=comment_kind, span=span)
                self.comments.append(comment)
                pending.append(comment)
                self._track_newlines(pos, end)
            elif group == "open_block":
                end = length
                span = self._span(pos, end)
                self.issues.append(SyntaxIssue("unterminated block comment", span))
                self._track_newlines(pos, end)
            elif group in ("open_qident", "open_string"):
                what = "quoted identifier" if group == "open_qident" else "string literal"
                self.issues.append(SyntaxIssue(f"unterminated {what}", span))
                kind = "qident" if group == "open_qident" else "string"
                value = text[1:].replace("''", "'") if kind == "string" else text[1:]
                self._emit(kind, text, value, span, pos, end, pending)
                pending = []
            else:
                value = text
                if group == "qident":
                    value = text[1:-1]
                elif group == "string":
                    value = text[1:-1].replace("''", "'")
                self._emit(group, text, value, span, pos, end, pending)  # type: ignore[arg-type]
                pending = []
            pos = end

        eof_span = self._span(length, length)
        self.tokens.append(Token(kind="eof", text="", value="", span=eof_span, start=length, end=length, leading=pending))
        return self.tokens, self.comments, self.issues

    def _emit(
        self,
        kind: TokenKind,
        text: str,
        value: str,
        span: Span,
        start: int,
        end: int,
        pending: List[Comment],
    ) -> None:
        self.tokens.append(
            Token(kind=kind, text=text, value=value, span=span, start=start, end=end, leading=list(pending))
        )

    def _span(self, start: int, end: int) -> Span:
        line = self._line
        column = start - self._line_start + 1
        chunk = self.text[start:end]
        newlines = chunk.count("\n")
        if newlines:
            end_line = line + newlines
            end_column = len(chunk) - chunk.rfind("\n")
        else:
            end_line = line
            end_column = column + len(chunk)
        return Span(line, column, end_line, end_column)

    def _advance_line(self, new_line_start: int) -> None:
        self._line += 1
        self._line_start = new_line_start

    def _track_newlines(self, start: int, end: int) -> None:
        chunk = self.text[start:end]
        count = chunk.count("\n")
        if count:
            self._line += count
            self._line_start = start + chunk.rfind("\n") + 1


def tokenize(text: str) -> Tuple[List[Token], List[Comment], List[SyntaxIssue]]:
    return Lexer(text).tokenize()


def number_literal_type(text: str) -> str:
    lowered = text.lower()
    if lowered.endswith(_DATE_SUFFIXES) and not lowered.isdigit():
        return "date"
    return "number"
