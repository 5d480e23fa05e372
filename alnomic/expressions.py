"""
Restricted expression language for declarative rules.

Expressions are Python syntax evaluated by walking the parsed AST; nothing
is ever passed to ``eval``. Supported: boolean logic, comparisons,
arithmetic, conditional expressions, attribute access (private names are
refused), indexing and slicing, literals, comprehensions, and calls to
functions explicitly marked safe.
"""

from __future__ import annotations
from typing import Any, Callable, Dict, Iterator, List, Optional
import ast
import functools
import operator

from .model import Call, Member, Name, Node, expression_text, iter_subexpressions


SAFE_MARKER = "_alnomic_safe_callable"

# str.format can reach private attributes through its field syntax.
BLOCKED_ATTRIBUTES = frozenset({"format", "format_map"})

# Methods of builtin values that never mutate their receiver.
READ_ONLY_BUILTIN_METHODS = frozenset({
    "lower", "upper", "casefold", "strip", "lstrip", "rstrip", "startswith",
    "endswith", "split", "rsplit", "splitlines", "replace", "find", "rfind",
    "isdigit", "isalpha", "isalnum", "isupper", "islower", "count", "index",
    "get", "keys", "values", "items",
})


class ExpressionEvalError(Exception):
    """An expression used an unsupported or unsafe construct, or failed to evaluate."""


def safe_callable(func: Callable[..., Any]) -> Callable[..., Any]:
    """Wrap ``func`` so rule expressions are allowed to call it."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        return func(*args, **kwargs)

    setattr(wrapper, SAFE_MARKER, True)
    return wrapper


def is_safe_callable(value: Any) -> bool:
    return bool(getattr(value, SAFE_MARKER, False))


# ------------------------------------------------------------------
# helpers exposed to expressions
# ------------------------------------------------------------------

def _lower(value: Any) -> str:
    return str(value or "").lower()


def _callee(node: Any) -> str:
    """Source text of the invoked function for a call node ("Rec.Modify")."""
    if isinstance(node, Call):
        return expression_text(node.callee)
    return ""


def _method(node: Any) -> str:
    return node.method if isinstance(node, Call) else ""


def _receiver(node: Any) -> str:
    if isinstance(node, Call) and isinstance(node.callee, Member):
        return expression_text(node.callee.target)
    return ""


def _text(node: Any) -> str:
    return expression_text(node) if isinstance(node, Node) else str(node)


def _calls(node: Any) -> List[Call]:
    """Every call nested in an expression."""
    if not isinstance(node, Node):
        return []
    return [expr for expr in iter_subexpressions(node) if isinstance(expr, Call)]


def _names(node: Any) -> List[str]:
    if not isinstance(node, Node):
        return []
    return [expr.name for expr in iter_subexpressions(node) if isinstance(expr, Name)]


def _is_query_method(value: Any, attr: str) -> bool:
    """
    Bound methods of alnomic objects are queries over the model and may be
    called. Builtin values only expose READ_ONLY_BUILTIN_METHODS, so an
    expression can never edit a list or dict it was handed.
    """
    owner = getattr(value, "__self__", None)
    if owner is None:
        return False
    owner_type = owner if isinstance(owner, type) else type(owner)
    if owner_type.__module__.split(".")[0] == __name__.split(".")[0]:
        return True
    return owner_type.__module__ == "builtins" and attr in READ_ONLY_BUILTIN_METHODS


BASE_HELPERS: Dict[str, Callable[..., Any]] = {
    name: safe_callable(func)
    for name, func in {
        "len": len,
        "any": any,
        "all": all,
        "sum": sum,
        "min": min,
        "max": max,
        "sorted": sorted,
        "abs": abs,
        "str": str,
        "lower": _lower,
        "callee": _callee,
        "method": _method,
        "receiver": _receiver,
        "text": _text,
        "calls": _calls,
        "names": _names,
    }.items()
}


# ------------------------------------------------------------------
# interpreter
# ------------------------------------------------------------------

_BINARY = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_COMPARE = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda left, right: left in right,
    ast.NotIn: lambda left, right: left not in right,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}


class ExpressionInterpreter:
    """
    Compiles each distinct expression string once and evaluates it against
    an environment of names. Instances are safe to share between threads:
    the cache only ever gains entries for identical keys.
    """

    def __init__(self) -> None:
        self._cache: Dict[str, ast.Expression] = {}

    def compile(self, expr: str) -> ast.Expression:
        tree = self._cache.get(expr)
        if tree is None:
            try:
                tree = ast.parse(expr, mode="eval")
            except SyntaxError as exc:
                raise ExpressionEvalError(f"invalid expression {expr!r}: {exc.msg}") from exc
            self._cache[expr] = tree
        return tree

    def evaluate(self, expr: str, env: Dict[str, Any]) -> Any:
        expr = expr.strip()
        if not expr:
            return True
        tree = self.compile(expr)
        try:
            return self._eval(tree.body, env)
        except ExpressionEvalError:
            raise
        except Exception as exc:
            raise ExpressionEvalError(f"{expr!r} failed: {type(exc).__name__}: {exc}") from exc

    def _eval(self, node: ast.AST, env: Dict[str, Any]) -> Any:
        handler = getattr(self, "_eval_" + type(node).__name__, None)
        if handler is None:
            raise ExpressionEvalError(f"unsupported expression node: {type(node).__name__}")
        return handler(node, env)

    def _eval_BoolOp(self, node: ast.BoolOp, env: Dict[str, Any]) -> Any:
        is_and = isinstance(node.op, ast.And)
        result: Any = is_and
        for value in node.values:
            result = self._eval(value, env)
            if bool(result) != is_and:
                return result
        return result

    def _eval_UnaryOp(self, node: ast.UnaryOp, env: Dict[str, Any]) -> Any:
        op = _UNARY.get(type(node.op))
        if op is None:
            raise ExpressionEvalError("unsupported unary operator")
        return op(self._eval(node.operand, env))

    def _eval_BinOp(self, node: ast.BinOp, env: Dict[str, Any]) -> Any:
        op = _BINARY.get(type(node.op))
        if op is None:
            raise ExpressionEvalError("unsupported binary operator")
        return op(self._eval(node.left, env), self._eval(node.right, env))

    def _eval_Compare(self, node: ast.Compare, env: Dict[str, Any]) -> bool:
        left = self._eval(node.left, env)
        for op_node, comparator in zip(node.ops, node.comparators):
            op = _COMPARE.get(type(op_node))
            if op is None:
                raise ExpressionEvalError("unsupported comparison operator")
            right = self._eval(comparator, env)
            if not op(left, right):
                return False
            left = right
        return True

    def _eval_IfExp(self, node: ast.IfExp, env: Dict[str, Any]) -> Any:
        branch = node.body if self._eval(node.test, env) else node.orelse
        return self._eval(branch, env)

    def _eval_Attribute(self, node: ast.Attribute, env: Dict[str, Any]) -> Any:
        if node.attr.startswith("_"):
            raise ExpressionEvalError("access to private attributes is not allowed")
        if node.attr in BLOCKED_ATTRIBUTES:
            raise ExpressionEvalError(f"attribute '{node.attr}' is not allowed")
        value = getattr(self._eval(node.value, env), node.attr)
        if callable(value) and not is_safe_callable(value) and not isinstance(value, type):
            if not _is_query_method(value, node.attr):
                raise ExpressionEvalError(f"method '{node.attr}' is not allowed")
            value = safe_callable(value)
        return value

    def _eval_Name(self, node: ast.Name, env: Dict[str, Any]) -> Any:
        if node.id in env:
            return env[node.id]
        raise ExpressionEvalError(f"unknown identifier '{node.id}'")

    def _eval_Constant(self, node: ast.Constant, env: Dict[str, Any]) -> Any:
        return node.value

    def _eval_Call(self, node: ast.Call, env: Dict[str, Any]) -> Any:
        func = self._eval(node.func, env)
        if not is_safe_callable(func):
            raise ExpressionEvalError("call to unsafe function is not allowed")
        args = [self._eval(arg, env) for arg in node.args]
        kwargs = {kw.arg: self._eval(kw.value, env) for kw in node.keywords if kw.arg}
        return func(*args, **kwargs)

    def _eval_Subscript(self, node: ast.Subscript, env: Dict[str, Any]) -> Any:
        value = self._eval(node.value, env)
        key = node.slice
        if isinstance(key, ast.Slice):
            return value[slice(
                self._eval(key.lower, env) if key.lower else None,
                self._eval(key.upper, env) if key.upper else None,
                self._eval(key.step, env) if key.step else None,
            )]
        return value[self._eval(key, env)]

    def _eval_List(self, node: ast.List, env: Dict[str, Any]) -> Any:
        return [self._eval(elt, env) for elt in node.elts]

    def _eval_Tuple(self, node: ast.Tuple, env: Dict[str, Any]) -> Any:
        return tuple(self._eval(elt, env) for elt in node.elts)

    def _eval_Set(self, node: ast.Set, env: Dict[str, Any]) -> Any:
        return {self._eval(elt, env) for elt in node.elts}

    def _eval_Dict(self, node: ast.Dict, env: Dict[str, Any]) -> Any:
        if any(key is None for key in node.keys):
            raise ExpressionEvalError("dict unpacking is not supported")
        return {self._eval(key, env): self._eval(value, env) for key, value in zip(node.keys, node.values)}

    def _eval_GeneratorExp(self, node: ast.GeneratorExp, env: Dict[str, Any]) -> Any:
        return (self._eval(node.elt, scope) for scope in self._scopes(node.generators, env))

    def _eval_ListComp(self, node: ast.ListComp, env: Dict[str, Any]) -> Any:
        return [self._eval(node.elt, scope) for scope in self._scopes(node.generators, env)]

    def _eval_SetComp(self, node: ast.SetComp, env: Dict[str, Any]) -> Any:
        return {self._eval(node.elt, scope) for scope in self._scopes(node.generators, env)}

    def _eval_DictComp(self, node: ast.DictComp, env: Dict[str, Any]) -> Any:
        return {
            self._eval(node.key, scope): self._eval(node.value, scope)
            for scope in self._scopes(node.generators, env)
        }

    def _scopes(self, generators: List[ast.comprehension], env: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
        """Yield one environment per combination of comprehension targets that passes its filters."""
        if not generators:
            yield env
            return
        first, rest = generators[0], generators[1:]
        for item in self._eval(first.iter, env):
            scope = dict(env)
            self._bind(scope, first.target, item)
            if all(self._eval(condition, scope) for condition in first.ifs):
                yield from self._scopes(rest, scope)

    def _bind(self, env: Dict[str, Any], target: ast.AST, value: Any) -> None:
        if isinstance(target, ast.Name):
            env[target.id] = value
        elif isinstance(target, (ast.Tuple, ast.List)):
            values = list(value)
            if len(values) != len(target.elts):
                raise ExpressionEvalError("comprehension target length mismatch")
            for sub_target, sub_value in zip(target.elts, values):
                self._bind(env, sub_target, sub_value)
        else:
            raise ExpressionEvalError("unsupported comprehension target")


def base_environment(extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    env: Dict[str, Any] = dict(BASE_HELPERS)
    if extra:
        env.update(extra)
    return env
