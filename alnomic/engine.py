"""
Rule evaluation.

The Evaluator makes one traversal per file. At every node it asks the
registry for the enabled rules registered on the node's kind, runs each
one in rule-id order and turns the findings into Diagnostics. A rule that
raises yields one ``internal-error`` diagnostic for that rule and node and
the traversal carries on.

Files are independent: ``analyze_paths`` fans them out over a thread pool
and merges the per-file lists once every file (or the deadline) is done.
"""

from __future__ import annotations
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple
import os
import sys

from . import catalog  # noqa: F401  (registers the built-in rules)
from .builder import build_source_file
from .config import EngineSettings
from .flow import FlowContext, FlowState, build_symbols, merge_states
from .model import (
    Assignment,
    Binary,
    BlockStatement,
    Call,
    CallStatement,
    CaseStatement,
    Declaration,
    Enumeration,
    ErrorStatement,
    ExitStatement,
    ForEachStatement,
    ForStatement,
    IfStatement,
    Index,
    JumpStatement,
    Member,
    Name,
    Node,
    Page,
    RepeatStatement,
    ScopeAccess,
    SetLiteral,
    SourceFile,
    SyntaxIssue,
    Table,
    Unary,
    WhileStatement,
    WithStatement,
)
from .report import Diagnostic, finalize
from .rules import DEFAULT_REGISTRY, ENGINE_RULES, INTERNAL_ERROR, IO_ERROR, SYNTAX_ERROR, Finding, Rule, RuleRegistry


SOURCE_SUFFIX = ".al"


def default_registry() -> RuleRegistry:
    return DEFAULT_REGISTRY


def engine_diagnostic(
    rule_id: str,
    path: str,
    line: int,
    column: int,
    message: str,
    settings: EngineSettings,
) -> Optional[Diagnostic]:
    """A diagnostic for one of the engine's own ids, or None when it is disabled."""
    if not settings.is_enabled(rule_id):
        return None
    category, severity = ENGINE_RULES[rule_id]
    return Diagnostic(
        rule_id=rule_id,
        severity=settings.severity_for(rule_id, severity),
        category=category,
        path=path,
        line=line,
        column=column,
        message=message,
    )


# ============================================================
# ======================= EVALUATOR ==========================
# ============================================================

class Evaluator:
    def __init__(self, source: SourceFile, registry: RuleRegistry, settings: EngineSettings) -> None:
        self.source = source
        self.registry = registry
        self.settings = settings
        self.diagnostics: List[Diagnostic] = []
        self.options = {rule.id: settings.options_for(rule) for rule in registry}
        self._rules_by_kind: Dict[str, List[Rule]] = {}
        self._statement_visitors: Dict[str, Callable[[Node, FlowContext], None]] = {
            "assignment": self._visit_assignment,
            "call_statement": self._visit_call_statement,
            "error": self._visit_error,
            "exit": self._visit_exit,
            "if": self._visit_if,
            "case": self._visit_case,
            "repeat": self._visit_repeat,
            "while": self._visit_while,
            "for": self._visit_for,
            "foreach": self._visit_foreach,
            "block": self._visit_block,
            "with": self._visit_with,
            "jump": self._visit_jump,
        }

    def run(self) -> List[Diagnostic]:
        for declaration in self.source.declarations:
            self.visit_declaration(declaration)
        return self.diagnostics

    # ------------------------------------------------------------------
    # dispatch
    # ------------------------------------------------------------------

    def rules_for(self, kind: str) -> List[Rule]:
        rules = self._rules_by_kind.get(kind)
        if rules is None:
            rules = [rule for rule in self.registry.for_kind(kind) if self.settings.is_enabled(rule.id)]
            self._rules_by_kind[kind] = rules
        return rules

    def dispatch(self, node: Node, ctx: FlowContext) -> None:
        if ctx.silent:
            return
        for rule in self.rules_for(node.kind):
            try:
                for finding in rule.check(node, ctx, ctx.declaration, self.source) or ():
                    self.report(rule, finding)
            except Exception as exc:
                self.rule_fault(rule, node, ctx, exc)

    def report(self, rule: Rule, finding: Finding) -> None:
        self.diagnostics.append(
            Diagnostic(
                rule_id=rule.id,
                severity=self.settings.severity_for(rule.id, rule.severity),
                category=rule.category,
                path=self.source.path,
                line=finding.span.line,
                column=finding.span.column,
                message=rule.render(finding),
            )
        )

    def rule_fault(self, rule: Rule, node: Node, ctx: FlowContext, exc: Exception) -> None:
        span = getattr(node, "span", None) or ctx.declaration.span
        sys.stderr.write(
            f"[alnomic] Rule '{rule.id}' failed on {node.kind} at "
            f"{self.source.path}:{span.line}:{span.column} ({type(exc).__name__}: {exc}).\n"
        )
        diag = engine_diagnostic(
            INTERNAL_ERROR,
            self.source.path,
            span.line,
            span.column,
            f"rule '{rule.id}' failed on {node.kind}: {type(exc).__name__}: {exc}",
            self.settings,
        )
        if diag is not None:
            self.diagnostics.append(diag)

    # ------------------------------------------------------------------
    # structure
    # ------------------------------------------------------------------

    def new_context(self, declaration: Declaration, member_kind: str = "declaration",
                    member: Optional[Node] = None, owner: Optional[str] = None) -> FlowContext:
        parameters = getattr(member, "parameters", ())
        variables = getattr(member, "variables", ())
        return FlowContext(
            declaration=declaration,
            member_kind=member_kind,
            member=member,
            owner=owner,
            symbols=build_symbols(declaration, parameters, variables),
            prefix=self.settings.prefix,
            options=self.options,
        )

    def visit_declaration(self, decl: Declaration) -> None:
        ctx = self.new_context(decl)
        self.dispatch(decl, ctx)
        for variable in decl.variables:
            self.dispatch(variable, ctx)

        if isinstance(decl, Table):
            for table_field in decl.fields:
                self.dispatch(table_field, ctx)
            for table_field in decl.fields + decl.field_modifications:
                for trigger in table_field.triggers.values():
                    self.visit_code(decl, trigger, "field_trigger", owner=table_field.name)
            for key in decl.keys:
                self.dispatch(key, ctx)
        elif isinstance(decl, Page):
            for page_field in decl.fields:
                self.dispatch(page_field, ctx)
                for trigger in page_field.triggers.values():
                    self.visit_code(decl, trigger, "control_trigger", owner=page_field.name)
            for action in decl.actions:
                self.dispatch(action, ctx)
                for trigger in action.triggers.values():
                    self.visit_code(decl, trigger, "action_trigger", owner=action.name)
        elif isinstance(decl, Enumeration):
            for value in decl.values:
                self.dispatch(value, ctx)

        for trigger in decl.triggers.values():
            self.visit_code(decl, trigger, "trigger")
        for procedure in decl.procedures:
            self.visit_code(decl, procedure, "procedure")

    def visit_code(self, decl: Declaration, member: Node, member_kind: str, owner: Optional[str] = None) -> None:
        """One trigger or procedure: a fresh FlowContext that never outlives the body."""
        ctx = self.new_context(decl, member_kind, member, owner)
        self.dispatch(member, ctx)
        for variable in getattr(member, "variables", ()):
            self.dispatch(variable, ctx)
        self.walk(getattr(member, "body", []), ctx)

    # ------------------------------------------------------------------
    # statements
    # ------------------------------------------------------------------

    def walk(self, body: Sequence[Node], ctx: FlowContext) -> None:
        for stmt in body:
            self.visit_statement(stmt, ctx)

    def visit_statement(self, stmt: Node, ctx: FlowContext) -> None:
        visitor = self._statement_visitors.get(stmt.kind)
        if visitor is None:
            self.dispatch(stmt, ctx)
            return
        visitor(stmt, ctx)

    def _visit_assignment(self, stmt: Assignment, ctx: FlowContext) -> None:
        self.dispatch(stmt, ctx)
        self.visit_expression(stmt.value, ctx)
        self.visit_expression(stmt.target, ctx)
        ctx.apply_assignment(stmt)

    def _visit_call_statement(self, stmt: CallStatement, ctx: FlowContext) -> None:
        self.dispatch(stmt, ctx)
        self.visit_expression(stmt.call, ctx)

    def _visit_error(self, stmt: ErrorStatement, ctx: FlowContext) -> None:
        self.dispatch(stmt, ctx)
        self.visit_expression(stmt.call, ctx)
        ctx.terminate()

    def _visit_exit(self, stmt: ExitStatement, ctx: FlowContext) -> None:
        self.dispatch(stmt, ctx)
        self.visit_expression(stmt.value, ctx)
        ctx.terminate()

    def _visit_block(self, stmt: BlockStatement, ctx: FlowContext) -> None:
        self.dispatch(stmt, ctx)
        self.walk(stmt.body, ctx)

    def _visit_with(self, stmt: WithStatement, ctx: FlowContext) -> None:
        self.dispatch(stmt, ctx)
        self.visit_expression(stmt.target, ctx)
        self.walk(stmt.body, ctx)

    def _visit_jump(self, stmt: JumpStatement, ctx: FlowContext) -> None:
        self.dispatch(stmt, ctx)

    def _visit_if(self, stmt: IfStatement, ctx: FlowContext, chained: bool = False) -> None:
        outer_depth = ctx.if_depth
        ctx.if_depth = outer_depth if chained else outer_depth + 1
        self.dispatch(stmt, ctx)
        self.visit_expression(stmt.condition, ctx)

        before = ctx.snapshot()
        self.walk(stmt.then_branch, ctx)
        after_then = ctx.snapshot()

        ctx.restore(before)
        else_branch = stmt.else_branch or []
        if len(else_branch) == 1 and isinstance(else_branch[0], IfStatement):
            self._visit_if(else_branch[0], ctx, chained=True)
        else:
            self.walk(else_branch, ctx)
        after_else = ctx.snapshot()

        ctx.state = merge_states([after_then, after_else])
        ctx.if_depth = outer_depth

    def _visit_case(self, stmt: CaseStatement, ctx: FlowContext) -> None:
        self.dispatch(stmt, ctx)
        self.visit_expression(stmt.selector, ctx)
        before = ctx.snapshot()
        outcomes: List[FlowState] = []
        for branch in stmt.branches:
            ctx.restore(before)
            for value in branch.values:
                self.visit_expression(value, ctx)
            self.walk(branch.body, ctx)
            outcomes.append(ctx.snapshot())
        ctx.restore(before)
        if stmt.else_branch is not None:
            self.walk(stmt.else_branch, ctx)
        outcomes.append(ctx.snapshot())
        ctx.state = merge_states(outcomes)

    def _visit_loop(self, stmt: Node, ctx: FlowContext, body: Callable[[], None], zero_iterations: bool) -> None:
        """
        Walk a loop twice: a silent pass to learn the back-edge state, then
        the real pass from the merge of the pre-loop and back-edge states.
        """
        before = ctx.snapshot()
        ctx.silent += 1
        ctx.enter_loop(before)
        body()
        ctx.leave_loop()
        ctx.silent -= 1

        entry = merge_states([before, ctx.snapshot()])
        ctx.restore(entry)
        ctx.enter_loop(entry)
        body()
        ctx.leave_loop()
        if zero_iterations:
            ctx.state = merge_states([ctx.snapshot(), entry])

    def _visit_repeat(self, stmt: RepeatStatement, ctx: FlowContext) -> None:
        self.dispatch(stmt, ctx)

        def body() -> None:
            self.walk(stmt.body, ctx)
            self.visit_expression(stmt.condition, ctx)

        self._visit_loop(stmt, ctx, body, zero_iterations=False)

    def _visit_while(self, stmt: WhileStatement, ctx: FlowContext) -> None:
        self.dispatch(stmt, ctx)

        def body() -> None:
            self.visit_expression(stmt.condition, ctx)
            self.walk(stmt.body, ctx)

        self._visit_loop(stmt, ctx, body, zero_iterations=True)

    def _visit_for(self, stmt: ForStatement, ctx: FlowContext) -> None:
        self.dispatch(stmt, ctx)
        self.visit_expression(stmt.start, ctx)
        self.visit_expression(stmt.stop, ctx)
        self._visit_loop(stmt, ctx, lambda: self.walk(stmt.body, ctx), zero_iterations=True)

    def _visit_foreach(self, stmt: ForEachStatement, ctx: FlowContext) -> None:
        self.dispatch(stmt, ctx)
        self.visit_expression(stmt.iterable, ctx)
        self._visit_loop(stmt, ctx, lambda: self.walk(stmt.body, ctx), zero_iterations=True)

    # ------------------------------------------------------------------
    # expressions
    # ------------------------------------------------------------------

    def visit_expression(self, expr: Optional[Node], ctx: FlowContext) -> None:
        """Operands first, then the node itself; calls then update the flow state."""
        if expr is None:
            return
        if isinstance(expr, Call):
            if isinstance(expr.callee, (Member, ScopeAccess)):
                self.visit_expression(expr.callee.target, ctx)
            elif not isinstance(expr.callee, Name):
                self.visit_expression(expr.callee, ctx)
            for arg in expr.args:
                self.visit_expression(arg, ctx)
            self.dispatch(expr, ctx)
            ctx.apply_call(expr)
            return
        if isinstance(expr, Binary):
            self.visit_expression(expr.left, ctx)
            self.visit_expression(expr.right, ctx)
        elif isinstance(expr, Unary):
            self.visit_expression(expr.operand, ctx)
        elif isinstance(expr, (Member, ScopeAccess)):
            self.visit_expression(expr.target, ctx)
        elif isinstance(expr, Index):
            self.visit_expression(expr.target, ctx)
            for item in expr.indices:
                self.visit_expression(item, ctx)
        elif isinstance(expr, SetLiteral):
            for item in expr.items:
                self.visit_expression(item, ctx)
        self.dispatch(expr, ctx)


# ============================================================
# ===================== FILE ANALYSIS ========================
# ============================================================

@dataclass
class FileResult:
    path: str
    diagnostics: List[Diagnostic] = field(default_factory=list)
    io_failed: bool = False


@dataclass
class AnalysisRun:
    diagnostics: List[Diagnostic] = field(default_factory=list)
    files_total: int = 0
    files_completed: int = 0
    timed_out: bool = False
    io_failed: bool = False

    @property
    def completed(self) -> bool:
        if self.io_failed:
            return False
        return not (self.timed_out and self.files_completed == 0)


def _issue_diagnostics(path: str, issues: List[SyntaxIssue], settings: EngineSettings) -> List[Diagnostic]:
    diagnostics: List[Diagnostic] = []
    for issue in issues:
        diag = engine_diagnostic(SYNTAX_ERROR, path, issue.span.line, issue.span.column, issue.message, settings)
        if diag is not None:
            diagnostics.append(diag)
    return diagnostics


def _file_fault(path: str, exc: Exception, settings: EngineSettings) -> List[Diagnostic]:
    sys.stderr.write(f"[alnomic] Analysis of {path} failed ({type(exc).__name__}: {exc}).\n")
    diag = engine_diagnostic(
        INTERNAL_ERROR, path, 1, 1, f"analysis failed: {type(exc).__name__}: {exc}", settings
    )
    return [diag] if diag is not None else []


def analyze_text(
    path: str,
    text: str,
    registry: Optional[RuleRegistry] = None,
    settings: Optional[EngineSettings] = None,
) -> List[Diagnostic]:
    """Unsorted diagnostics for one file's text. Never raises."""
    registry = registry or default_registry()
    settings = settings or EngineSettings()
    try:
        source, issues = build_source_file(path, text)
    except Exception as exc:
        return _file_fault(path, exc, settings)

    diagnostics = _issue_diagnostics(path, issues, settings)
    evaluator = Evaluator(source, registry, settings)
    try:
        diagnostics.extend(evaluator.run())
    except Exception as exc:
        diagnostics.extend(evaluator.diagnostics)
        diagnostics.extend(_file_fault(path, exc, settings))
    return diagnostics


def analyze_source(
    text: str,
    path: str = "<memory>",
    registry: Optional[RuleRegistry] = None,
    settings: Optional[EngineSettings] = None,
) -> List[Diagnostic]:
    """Analyze AL source held in memory; returns sorted, deduplicated diagnostics."""
    return finalize(analyze_text(path, text, registry, settings))


def parse_source(text: str, path: str = "<memory>") -> Tuple[SourceFile, List[SyntaxIssue]]:
    return build_source_file(path, text)


def analyze_file(
    path: str,
    registry: Optional[RuleRegistry] = None,
    settings: Optional[EngineSettings] = None,
) -> FileResult:
    settings = settings or EngineSettings()
    try:
        with open(path, "r", encoding="utf-8-sig") as handle:
            text = handle.read()
    except (OSError, UnicodeDecodeError) as exc:
        sys.stderr.write(f"[alnomic] Could not read {path}: {exc}\n")
        result = FileResult(path=path, io_failed=True)
        diag = engine_diagnostic(IO_ERROR, path, 1, 1, f"could not read file: {exc}", settings)
        if diag is not None:
            result.diagnostics.append(diag)
        return result
    return FileResult(path=path, diagnostics=analyze_text(path, text, registry, settings))


def collect_source_files(paths: Sequence[str]) -> Tuple[List[str], List[str]]:
    """
    Expand directories recursively into their ``.al`` files.
    Returns (files, missing) with files de-duplicated in a stable order.
    """
    files: List[str] = []
    missing: List[str] = []
    seen = set()

    def add(path: str) -> None:
        normalized = os.path.normpath(path)
        if normalized not in seen:
            seen.add(normalized)
            files.append(normalized)

    for path in paths:
        if os.path.isdir(path):
            for root, dirs, names in os.walk(path):
                dirs.sort()
                for name in sorted(names):
                    if name.lower().endswith(SOURCE_SUFFIX):
                        add(os.path.join(root, name))
        elif os.path.isfile(path):
            add(path)
        else:
            missing.append(path)
    return files, missing


def analyze_paths(
    paths: Sequence[str],
    registry: Optional[RuleRegistry] = None,
    settings: Optional[EngineSettings] = None,
    jobs: Optional[int] = None,
    timeout: Optional[float] = None,
) -> AnalysisRun:
    """
    Analyze every requested file on a thread pool. Analyses that have not
    started when ``timeout`` expires are cancelled; finished ones are kept.
    """
    registry = registry or default_registry()
    settings = settings or EngineSettings()
    files, missing = collect_source_files(paths)
    run = AnalysisRun(files_total=len(files))
    collected: List[Diagnostic] = []

    for path in missing:
        sys.stderr.write(f"[alnomic] Path not found: {path}\n")
        run.io_failed = True
        diag = engine_diagnostic(IO_ERROR, path, 1, 1, "path does not exist", settings)
        if diag is not None:
            collected.append(diag)

    executor = ThreadPoolExecutor(max_workers=jobs or os.cpu_count() or 1)
    try:
        futures = {executor.submit(analyze_file, path, registry, settings): path for path in files}
        done, pending = wait(futures, timeout=timeout)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    for future in done:
        path = futures[future]
        exc = future.exception()
        if exc is not None:
            collected.extend(_file_fault(path, exc, settings))  # type: ignore[arg-type]
            run.files_completed += 1
            continue
        result = future.result()
        collected.extend(result.diagnostics)
        run.files_completed += 1
        if result.io_failed:
            run.io_failed = True

    if pending:
        run.timed_out = True
        sys.stderr.write(
            f"[alnomic] Timed out after {timeout}s; {run.files_completed} of {run.files_total} file(s) analyzed.\n"
        )

    run.diagnostics = finalize(collected)
    return run
