"""
Capturing host callables as persistable ClosureInfo.

Only two shapes are accepted: a direct reference to a registered function,
or a lambda/def whose whole body is one call to a registered function whose
arguments are either the callable's own parameters, passed through untouched,
or expressions computable right now from the enclosing scope (captured as
literals). Anything else, including anything ambiguous, is rejected.
"""
from __future__ import annotations

import ast
import builtins
import inspect
import operator
import textwrap
from typing import Any, Callable, Dict, List, Optional, Tuple

from xbridge.xbridge_convert import TypeConverterRegistry
from xbridge.xbridge_datatypes import ClosureArg, ClosureInfo, Variant, VariantType
from xbridge.xbridge_errors import (
    ClosureValidationError, SerializationError, TypeConversionError,
)
from xbridge.xbridge_registry import FunctionRegistry


# Nodes allowed inside a captured literal expression. No calls, no lambdas,
# no comprehensions: a literal must be plain data reachable from scope.
_LITERAL_NODES = (
    ast.Constant, ast.Name, ast.Load, ast.Attribute, ast.Subscript,
    ast.Slice, ast.Tuple, ast.List, ast.Dict, ast.Set, ast.UnaryOp, ast.BinOp,
    ast.BoolOp, ast.Compare, ast.IfExp, ast.JoinedStr, ast.FormattedValue,
    ast.operator, ast.unaryop, ast.boolop, ast.cmpop, ast.expr_context,
)

_BINARY_OPS = {
    ast.Add: operator.add, ast.Sub: operator.sub, ast.Mult: operator.mul,
    ast.MatMult: operator.matmul, ast.Div: operator.truediv, ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod, ast.Pow: operator.pow, ast.LShift: operator.lshift,
    ast.RShift: operator.rshift, ast.BitOr: operator.or_, ast.BitXor: operator.xor,
    ast.BitAnd: operator.and_,
}

_UNARY_OPS = {
    ast.UAdd: operator.pos, ast.USub: operator.neg, ast.Not: operator.not_, ast.Invert: operator.invert,
}

_COMPARE_OPS = {
    ast.Eq: operator.eq, ast.NotEq: operator.ne, ast.Lt: operator.lt, ast.LtE: operator.le,
    ast.Gt: operator.gt, ast.GtE: operator.ge, ast.Is: operator.is_, ast.IsNot: operator.is_not,
    ast.In: lambda a, b: a in b, ast.NotIn: lambda a, b: a not in b,
}

_CONVERSIONS = {"s": str, "r": repr, "a": ascii}


def _function_key(value: Any, functions: FunctionRegistry) -> Optional[str]:
    """Registry key for a native callable or a host-side function proxy."""
    key = getattr(value, "__bridge_function__", None)
    if isinstance(key, str):
        return key
    if callable(value):
        return functions.lookup_native(value)
    return None


def _passthrough(key: str, functions: FunctionRegistry) -> ClosureInfo:
    desc = functions.lookup_function(key)
    n = desc.arity if desc is not None else 0
    return ClosureInfo(key, [ClosureArg.param(i) for i in range(n)], n)


class _Capture:
    def __init__(self, fn: Callable, functions: FunctionRegistry, converters: TypeConverterRegistry):
        self.fn = fn
        self.functions = functions
        self.converters = converters
        self.label = getattr(fn, "__qualname__", repr(fn))

    def reject(self, why: str) -> ClosureValidationError:
        return ClosureValidationError(f"cannot capture {self.label}: {why}")

    # --- source ---
    def _node(self) -> Tuple[ast.AST, List[str]]:
        try:
            source = inspect.getsource(self.fn)
        except (OSError, TypeError):
            raise self.reject("its source is not available")
        tree = None
        text = textwrap.dedent(source)
        for candidate in (text, text.strip().rstrip(",")):
            try:
                tree = ast.parse(candidate)
                break
            except SyntaxError:
                continue
        if tree is None:
            # A lambda embedded in a larger expression; cut from the keyword on.
            pos = text.find("lambda")
            if pos < 0:
                raise self.reject("its source could not be parsed")
            tree = self._parse_lambda_fragment(text[pos:])

        name = self.fn.__name__
        if name == "<lambda>":
            found = [n for n in ast.walk(tree) if isinstance(n, ast.Lambda)]
            if len(found) != 1:
                raise self.reject(f"found {len(found)} lambdas in its source; cannot tell which one it is")
            node = found[0]
        else:
            found = [n for n in ast.walk(tree)
                     if isinstance(n, (ast.FunctionDef, ast.AsyncFunctionDef)) and n.name == name]
            if len(found) != 1:
                raise self.reject("its definition could not be located")
            node = found[0]
            if isinstance(node, ast.AsyncFunctionDef):
                raise self.reject("coroutines cannot be captured")
        return node, self._params(node.args)

    def _parse_lambda_fragment(self, text: str) -> ast.AST:
        # Trim trailing characters until the fragment parses as an expression.
        for end in range(len(text), 0, -1):
            try:
                return ast.parse(text[:end], mode="eval")
            except SyntaxError:
                continue
        raise self.reject("its source could not be parsed")

    def _params(self, args: ast.arguments) -> List[str]:
        if args.vararg or args.kwarg:
            raise self.reject("*args and **kwargs parameters are not allowed")
        if args.kwonlyargs or args.posonlyargs:
            raise self.reject("keyword-only and positional-only parameters are not allowed")
        if args.defaults or args.kw_defaults:
            raise self.reject("parameter defaults are not allowed")
        return [a.arg for a in args.args]

    # --- body ---
    def _call(self, node: ast.AST) -> ast.Call:
        if isinstance(node, ast.Lambda):
            body = node.body
        else:
            stmts = list(node.body)
            if stmts and isinstance(stmts[0], ast.Expr) and isinstance(getattr(stmts[0], "value", None), ast.Constant) \
                    and isinstance(stmts[0].value.value, str):
                stmts = stmts[1:]
            if node.decorator_list:
                raise self.reject("decorated functions are not allowed")
            if len(stmts) != 1 or not isinstance(stmts[0], ast.Return) or stmts[0].value is None:
                raise self.reject("the body must be a single 'return <call>' statement")
            body = stmts[0].value
        if not isinstance(body, ast.Call):
            raise self.reject("the body must be exactly one call to a registered function")
        return body

    def _scope(self) -> Dict[str, Any]:
        env: Dict[str, Any] = {}
        env.update(vars(builtins))
        env.update(getattr(self.fn, "__globals__", {}))
        try:
            cv = inspect.getclosurevars(self.fn)
        except (TypeError, ValueError):
            cv = None
        if cv is not None:
            env.update(cv.nonlocals)
        return env

    def _names(self, node: ast.AST) -> set:
        return {n.id for n in ast.walk(node) if isinstance(n, ast.Name)}

    def _evaluate(self, node: ast.expr, scope: Dict[str, Any]) -> Any:
        for sub in ast.walk(node):
            if not isinstance(sub, _LITERAL_NODES):
                raise self.reject(
                    f"argument {ast.unparse(node)!r} is not a value computable from the enclosing scope"
                )
        try:
            return self._value(node, scope)
        except ClosureValidationError:
            raise
        except Exception as e:
            raise self.reject(f"argument {ast.unparse(node)!r} could not be evaluated: {e}")

    def _value(self, node: ast.AST, scope: Dict[str, Any]) -> Any:
        """Walks an allowlisted expression tree against `scope`."""
        match node:
            case ast.Constant(value=value):
                return value
            case ast.Name(id=name):
                if name not in scope:
                    raise self.reject(f"name {name!r} is not defined")
                return scope[name]
            case ast.Attribute(value=owner, attr=attr):
                return getattr(self._value(owner, scope), attr)
            case ast.Subscript(value=owner, slice=index):
                return self._value(owner, scope)[self._value(index, scope)]
            case ast.Slice(lower=lower, upper=upper, step=step):
                return slice(*(None if part is None else self._value(part, scope)
                               for part in (lower, upper, step)))
            case ast.Tuple(elts=elts):
                return tuple(self._value(e, scope) for e in elts)
            case ast.List(elts=elts):
                return [self._value(e, scope) for e in elts]
            case ast.Set(elts=elts):
                return {self._value(e, scope) for e in elts}
            case ast.Dict(keys=keys, values=values):
                if any(k is None for k in keys):
                    raise self.reject("'**' in a dict display is not allowed")
                return {self._value(k, scope): self._value(v, scope) for k, v in zip(keys, values)}
            case ast.UnaryOp(op=op, operand=operand):
                return _UNARY_OPS[type(op)](self._value(operand, scope))
            case ast.BinOp(left=left, op=op, right=right):
                return _BINARY_OPS[type(op)](self._value(left, scope), self._value(right, scope))
            case ast.BoolOp(op=op, values=values):
                result = None
                for v in values:
                    result = self._value(v, scope)
                    if isinstance(op, ast.And) and not result:
                        break
                    if isinstance(op, ast.Or) and result:
                        break
                return result
            case ast.Compare(left=left, ops=ops, comparators=comparators):
                lhs = self._value(left, scope)
                for op, right in zip(ops, comparators):
                    rhs = self._value(right, scope)
                    if not _COMPARE_OPS[type(op)](lhs, rhs):
                        return False
                    lhs = rhs
                return True
            case ast.IfExp(test=test, body=body, orelse=orelse):
                return self._value(body if self._value(test, scope) else orelse, scope)
            case ast.JoinedStr(values=values):
                return "".join(str(self._value(v, scope)) for v in values)
            case ast.FormattedValue(value=value, conversion=conversion, format_spec=spec):
                v = self._value(value, scope)
                if conversion != -1:
                    v = _CONVERSIONS[chr(conversion)](v)
                return format(v, "" if spec is None else self._value(spec, scope))
            case _:
                raise self.reject(f"{type(node).__name__} nodes cannot be evaluated")

    def _literal(self, value: Any) -> Variant:
        key = _function_key(value, self.functions)
        if key is not None:
            return Variant(VariantType.CLOSURE, _passthrough(key, self.functions))
        try:
            return self.converters.to_variant(value)
        except TypeConversionError as e:
            raise self.reject(f"captured value cannot be marshaled: {e}")

    def build(self) -> ClosureInfo:
        node, params = self._node()
        call = self._call(node)
        scope = self._scope()
        position = {name: i for i, name in enumerate(params)}

        if self._names(call.func) & set(position):
            raise self.reject("the called function may not depend on the parameters")
        if any(isinstance(n, ast.Call) for n in ast.walk(call.func)):
            raise self.reject("only one function call is allowed")
        target = self._evaluate(call.func, scope)
        key = _function_key(target, self.functions)
        if key is None:
            raise self.reject(f"{ast.unparse(call.func)!r} is not a registered function")
        desc = self.functions.lookup_function(key)

        slots: List[Optional[ClosureArg]] = []

        def slot_for(arg: ast.expr) -> ClosureArg:
            if isinstance(arg, ast.Starred):
                raise self.reject("starred arguments are not allowed")
            if isinstance(arg, ast.Name) and arg.id in position:
                return ClosureArg.param(position[arg.id])
            if self._names(arg) & set(position):
                raise self.reject(
                    f"argument {ast.unparse(arg)!r} combines a parameter with other operations"
                )
            if any(isinstance(n, ast.Call) for n in ast.walk(arg)):
                raise self.reject("only one function call is allowed")
            return ClosureArg.literal(self._literal(self._evaluate(arg, scope)))

        for arg in call.args:
            slots.append(slot_for(arg))
        if call.keywords:
            if desc is None:
                raise self.reject(f"keyword arguments need the signature of {key!r}")
            names = desc.param_names
            slots.extend([None] * (len(names) - len(slots)))
            for kw in call.keywords:
                if kw.arg is None:
                    raise self.reject("'**' arguments are not allowed")
                if kw.arg not in names:
                    raise self.reject(f"{key!r} has no parameter named {kw.arg!r}")
                i = names.index(kw.arg)
                if i < len(call.args) or slots[i] is not None:
                    raise self.reject(f"parameter {kw.arg!r} is given twice")
                slots[i] = slot_for(kw.value)
            if any(s is None for s in slots):
                missing = [names[i] for i, s in enumerate(slots) if s is None]
                raise self.reject(f"no value for parameter(s) {', '.join(missing)} of {key!r}")
        if desc is not None and len(slots) != desc.arity:
            raise self.reject(f"{key!r} takes {desc.arity} argument(s), the call passes {len(slots)}")
        return ClosureInfo(key, slots, len(params))


def capture(fn: Any, functions: FunctionRegistry, converters: TypeConverterRegistry) -> ClosureInfo:
    """Validates `fn` and records it as a ClosureInfo."""
    if isinstance(fn, ClosureInfo):
        return fn
    key = _function_key(fn, functions)
    if key is not None:
        return _passthrough(key, functions)
    if not inspect.isfunction(fn):
        raise ClosureValidationError(f"cannot capture {fn!r}: not a function")
    return _Capture(fn, functions, converters).build()


def check_closure(closure: ClosureInfo, functions: FunctionRegistry) -> ClosureInfo:
    """Raises SerializationError when a referenced function is not registered."""
    for key in closure.function_keys():
        if key not in functions:
            raise SerializationError(f"closure refers to function {key!r}, which is not registered")
    return closure


__all__ = ["capture", "check_closure"]
