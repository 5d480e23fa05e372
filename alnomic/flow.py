"""
Flow context tracking for one code body.

The evaluator owns the traversal; this module owns what the traversal
knows at each point: loop nesting, the commit marker, and the load /
emptiness-check state of every record variable in scope.

Load state is one of ``full``, ``partial`` or ``unknown`` (absent from the
map). Branch merges are pessimistic: partial on any reachable path wins,
full survives only if every reachable path is full.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

from .model import (
    Assignment,
    Call,
    Declaration,
    Name,
    Node,
    Page,
    Parameter,
    Table,
    TypeRef,
    VariableDecl,
)


FULL = "full"
PARTIAL = "partial"
UNKNOWN = "unknown"

LOOKUP_METHODS = frozenset({"get"})
PARTIAL_LOAD_METHODS = frozenset({"setloadfields", "addloadfields"})
WRITE_METHODS = frozenset({"insert", "modify", "delete", "rename", "transferfields"})
BULK_METHODS = frozenset({"deleteall", "modifyall"})
MATERIALIZE_METHODS = frozenset({"calcfields", "calcsums"})
EMPTY_CHECK_METHODS = frozenset({"isempty"})
FILTER_METHODS = frozenset({"setrange", "setfilter", "copyfilters", "copyfilter", "setview", "reset"})
RESET_METHODS = frozenset({"reset"})

UI_FUNCTIONS = frozenset({"confirm", "message", "strmenu"})
DIALOG_METHODS = frozenset({"open", "update"})

TABLE_MEMBER_KINDS = frozenset({"trigger", "field_trigger"})


# ============================================================
# ======================= FLOW STATE =========================
# ============================================================

@dataclass
class FlowState:
    loads: Dict[str, str] = field(default_factory=dict)
    checked: Set[str] = field(default_factory=set)
    commit_observed: bool = False
    reachable: bool = True

    def copy(self) -> "FlowState":
        return FlowState(
            loads=dict(self.loads),
            checked=set(self.checked),
            commit_observed=self.commit_observed,
            reachable=self.reachable,
        )


def merge_states(states: Iterable[FlowState]) -> FlowState:
    """Join the states of several incoming paths; unreachable paths do not contribute."""
    states = list(states)
    live = [state for state in states if state.reachable]
    if not live:
        dead = states[0].copy() if states else FlowState()
        dead.reachable = False
        return dead

    names: Set[str] = set()
    for state in live:
        names.update(state.loads)
    loads: Dict[str, str] = {}
    for name in names:
        seen = [state.loads.get(name, UNKNOWN) for state in live]
        if PARTIAL in seen:
            loads[name] = PARTIAL
        elif all(value == FULL for value in seen):
            loads[name] = FULL

    checked = set(live[0].checked)
    for state in live[1:]:
        checked &= state.checked

    return FlowState(
        loads=loads,
        checked=checked,
        commit_observed=any(state.commit_observed for state in live),
        reachable=True,
    )


# ============================================================
# ====================== FLOW CONTEXT ========================
# ============================================================

@dataclass
class FlowContext:
    """
    Everything a rule may consult about the position of the node it is
    checking. One instance per code body (or per declaration for
    structural nodes); never shared between files.
    """
    declaration: Declaration
    member_kind: str = "declaration"
    member: Optional[Node] = None
    owner: Optional[str] = None  # field/action/control the trigger belongs to
    symbols: Dict[str, TypeRef] = field(default_factory=dict)
    state: FlowState = field(default_factory=FlowState)
    loop_depth: int = 0
    loop_entries: List[FlowState] = field(default_factory=list)
    if_depth: int = 0
    silent: int = 0
    prefix: Optional[str] = None
    options: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    # ------------------------------------------------------------------
    # position
    # ------------------------------------------------------------------

    @property
    def object_kind(self) -> str:
        return self.declaration.declaration_kind

    @property
    def in_loop(self) -> bool:
        return self.loop_depth > 0

    @property
    def in_table_trigger(self) -> bool:
        return self.object_kind == "table" and self.member_kind in TABLE_MEMBER_KINDS

    @property
    def commit_observed(self) -> bool:
        return self.state.commit_observed

    @property
    def reachable(self) -> bool:
        return self.state.reachable

    def option(self, rule_id: str, name: str, default: Any = None) -> Any:
        return self.options.get(rule_id, {}).get(name, default)

    # ------------------------------------------------------------------
    # symbols
    # ------------------------------------------------------------------

    def type_of(self, name: str) -> Optional[TypeRef]:
        return self.symbols.get(name.lower())

    def is_record(self, name: Optional[str]) -> bool:
        if not name:
            return False
        type_ref = self.symbols.get(name.lower())
        return bool(type_ref and type_ref.is_record)

    def is_temporary(self, name: Optional[str]) -> bool:
        if not name:
            return False
        type_ref = self.symbols.get(name.lower())
        return bool(type_ref and type_ref.temporary)

    def record_receiver(self, call: Call) -> Optional[str]:
        """Lower-cased receiver of ``call`` when it is a known record variable."""
        receiver = call.receiver
        if receiver is not None and self.is_record(receiver):
            return receiver
        return None

    # ------------------------------------------------------------------
    # state queries
    # ------------------------------------------------------------------

    def load_state(self, name: str) -> str:
        return self.state.loads.get(name.lower(), UNKNOWN)

    def loop_entry_load_state(self, name: str) -> str:
        """Load state of ``name`` on entry to the outermost enclosing loop."""
        if not self.loop_entries:
            return self.load_state(name)
        return self.loop_entries[0].loads.get(name.lower(), UNKNOWN)

    def is_emptiness_checked(self, name: str) -> bool:
        return name.lower() in self.state.checked

    # ------------------------------------------------------------------
    # state transitions
    # ------------------------------------------------------------------

    def snapshot(self) -> FlowState:
        return self.state.copy()

    def restore(self, state: FlowState) -> None:
        self.state = state.copy()

    def enter_loop(self, entry: FlowState) -> None:
        self.loop_depth += 1
        self.loop_entries.append(entry.copy())

    def leave_loop(self) -> None:
        self.loop_depth -= 1
        self.loop_entries.pop()

    def terminate(self) -> None:
        self.state.reachable = False

    def apply_call(self, call: Call) -> None:
        method = call.method
        if call.is_global:
            if method == "commit":
                self.state.commit_observed = True
            elif method == "clear" and call.args and isinstance(call.args[0], Name):
                target = call.args[0].key
                if self.is_record(target):
                    self._forget(target)
            return

        receiver = self.record_receiver(call)
        if receiver is None:
            return
        if method in LOOKUP_METHODS:
            self.state.loads[receiver] = FULL
        elif method in PARTIAL_LOAD_METHODS:
            self.state.loads[receiver] = PARTIAL
        elif method in EMPTY_CHECK_METHODS:
            self.state.checked.add(receiver)
        if method in RESET_METHODS:
            self.state.loads.pop(receiver, None)
        if method in FILTER_METHODS:
            self.state.checked.discard(receiver)

    def apply_assignment(self, stmt: Assignment) -> None:
        if stmt.op != ":=" or not isinstance(stmt.target, Name):
            return
        target = stmt.target.key
        if not self.is_record(target):
            return
        if isinstance(stmt.value, Name) and self.is_record(stmt.value.key):
            source_state = self.state.loads.get(stmt.value.key)
            if source_state is None:
                self.state.loads.pop(target, None)
            else:
                self.state.loads[target] = source_state
        else:
            self.state.loads.pop(target, None)

    def _forget(self, name: str) -> None:
        self.state.loads.pop(name, None)
        self.state.checked.discard(name)


# ============================================================
# ===================== CALL HELPERS =========================
# ============================================================

def is_ui_call(call: Call, ctx: FlowContext) -> bool:
    """Confirm/Message/StrMenu, or Open/Update on a Dialog variable."""
    if call.is_global:
        return call.method in UI_FUNCTIONS
    receiver = call.receiver
    if receiver is None or call.method not in DIALOG_METHODS:
        return False
    type_ref = ctx.type_of(receiver)
    return bool(type_ref and type_ref.key == "dialog")


def build_symbols(
    declaration: Declaration,
    parameters: Iterable[Parameter] = (),
    variables: Iterable[VariableDecl] = (),
) -> Dict[str, TypeRef]:
    """
    The names visible inside one code body: object globals, then
    parameters, then locals (later declarations shadow earlier ones).
    """
    symbols: Dict[str, TypeRef] = {}
    implicit = implicit_record_type(declaration)
    if implicit is not None:
        symbols["rec"] = implicit
        symbols["xrec"] = implicit
    for var in declaration.variables:
        symbols[var.key] = var.type
    for param in parameters:
        symbols[param.key] = param.type
    for var in variables:
        symbols[var.key] = var.type
    return symbols


def implicit_record_type(declaration: Declaration) -> Optional[TypeRef]:
    if isinstance(declaration, Table):
        table_name = declaration.extends if declaration.object_type == "tableextension" else declaration.name
        return TypeRef(name="Record", text=f'Record "{table_name}"', subtype=table_name)
    if isinstance(declaration, Page):
        if declaration.source_table:
            return TypeRef(name="Record", text=f'Record "{declaration.source_table}"', subtype=declaration.source_table)
        if declaration.object_type == "pageextension":
            return TypeRef(name="Record", text="Record", subtype=None)
    return None
