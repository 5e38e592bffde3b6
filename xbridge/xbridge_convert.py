"""
Bidirectional conversion between Variants and native (annotated Python) types.

Conversion is driven by type hints. The registry holds an ordered list of
rules; each rule claims the hints it understands. Container rules only ever
call back into the registry for their element hints, so a new scalar rule is
picked up by every container without touching them.
"""
from __future__ import annotations

import collections.abc
import datetime as _dt
import inspect
import types
import typing
from abc import ABC, abstractmethod
from typing import Any, Generic, List, Optional, TypeVar, TYPE_CHECKING

from xbridge.xbridge_datatypes import Variant, VariantType, Image, ClosureInfo, UNDEFINED
from xbridge.xbridge_errors import TypeConversionError
from xbridge.xbridge_handles import ObjectHandle

if TYPE_CHECKING:
    from xbridge.xbridge_registry import ClassRegistry


T = TypeVar("T")


class Shared(Generic[T]):
    """Annotation marker: `Shared[Shape]` passes the live instance instead of a copy."""


def hint_name(hint: Any) -> str:
    """A short human-readable name for a type hint."""
    if hint is inspect.Parameter.empty or hint is Any:
        return "Any"
    if hint is type(None):
        return "None"
    if isinstance(hint, type) and typing.get_origin(hint) is None:
        return hint.__name__
    return repr(hint).replace("typing.", "").replace("xbridge.xbridge_convert.", "").replace("xbridge.xbridge_datatypes.", "")


def _actual(variant: Variant) -> str:
    if variant.type is VariantType.OBJECT and variant.value.is_valid:
        return f"object {variant.value.class_name}"
    return variant.type.value


def _is_union(hint: Any) -> bool:
    origin = typing.get_origin(hint)
    return origin is typing.Union or origin is types.UnionType


# =================================================================
# Rules
# =================================================================

class ConversionRule(ABC):
    """One family of type hints and how to move it across the boundary."""

    @abstractmethod
    def accepts(self, hint: Any, registry: "TypeConverterRegistry") -> bool: ...

    def supported(self, hint: Any, registry: "TypeConverterRegistry") -> bool:
        """Whether every component of `hint` is convertible too."""
        return True

    @abstractmethod
    def from_variant(self, variant: Variant, hint: Any, registry: "TypeConverterRegistry", context: Any) -> Any: ...

    @abstractmethod
    def to_variant(self, value: Any, hint: Any, registry: "TypeConverterRegistry") -> Variant: ...

    def fail(self, hint: Any, variant: Variant, detail: Optional[str] = None) -> TypeConversionError:
        return TypeConversionError(hint_name(hint), _actual(variant), detail=detail)


class VariantRule(ConversionRule):
    """`Variant` parameters receive the value untouched."""

    def accepts(self, hint, registry):
        return hint is Variant

    def from_variant(self, variant, hint, registry, context):
        return variant

    def to_variant(self, value, hint, registry):
        return registry.to_variant(value)


class DynamicRule(ConversionRule):
    """`Any` (or missing) annotations receive the natural Python value."""

    def accepts(self, hint, registry):
        return hint is Any or hint is inspect.Parameter.empty or hint is object

    def from_variant(self, variant, hint, registry, context):
        match variant.type:
            case VariantType.LIST:
                return [self.from_variant(v, hint, registry, context) for v in variant.value]
            case VariantType.DICT:
                return {
                    registry.hashable(self.from_variant(k, hint, registry, context)):
                        self.from_variant(v, hint, registry, context)
                    for k, v in variant.value
                }
            case VariantType.OBJECT:
                return variant.value.instance
            case _:
                return variant.to_host()

    def to_variant(self, value, hint, registry):
        return registry.to_variant(value)


class NoneRule(ConversionRule):
    """`None` returns travel as UNDEFINED."""

    def accepts(self, hint, registry):
        return hint is None or hint is type(None)

    def from_variant(self, variant, hint, registry, context):
        if not variant.is_undefined:
            raise self.fail(hint, variant)
        return None

    def to_variant(self, value, hint, registry):
        if value is not None:
            raise TypeConversionError("None", type(value).__name__)
        return UNDEFINED


class NumericRule(ConversionRule):
    """int, float and bool accept either numeric tag."""

    def accepts(self, hint, registry):
        return hint in (int, float, bool)

    def from_variant(self, variant, hint, registry, context):
        if not variant.is_numeric:
            raise self.fail(hint, variant)
        try:
            if hint is int:
                return int(variant.value)
            if hint is float:
                return float(variant.value)
        except (OverflowError, ValueError) as e:
            raise self.fail(hint, variant, detail=str(e))
        return bool(variant.value)

    def to_variant(self, value, hint, registry):
        if isinstance(value, Variant):
            value = value.value if value.is_numeric else value
        if not isinstance(value, (int, float)):
            raise TypeConversionError(hint_name(hint), type(value).__name__)
        try:
            if hint is float:
                return Variant(VariantType.FLOAT, float(value))
            return Variant(VariantType.INTEGER, int(value))
        except (OverflowError, ValueError) as e:
            raise TypeConversionError(hint_name(hint), type(value).__name__, detail=str(e))


class ScalarRule(ConversionRule):
    """A hint that maps one-to-one onto a single variant tag."""

    def __init__(self, py_type: type, vtype: VariantType):
        self.py_type = py_type
        self.vtype = vtype

    def accepts(self, hint, registry):
        return hint is self.py_type

    def from_variant(self, variant, hint, registry, context):
        if variant.type is not self.vtype:
            raise self.fail(hint, variant)
        return variant.value

    def to_variant(self, value, hint, registry):
        if isinstance(value, Variant) and value.type is self.vtype:
            return value
        if not isinstance(value, self.py_type):
            raise TypeConversionError(hint_name(hint), type(value).__name__)
        return Variant(self.vtype, value)


class OptionalRule(ConversionRule):
    """Unions; UNDEFINED satisfies an arm of None."""

    def accepts(self, hint, registry):
        return _is_union(hint)

    def supported(self, hint, registry):
        return all(a is type(None) or registry.supports(a) for a in typing.get_args(hint))

    def from_variant(self, variant, hint, registry, context):
        arms = typing.get_args(hint)
        if variant.is_undefined and type(None) in arms:
            return None
        for arm in arms:
            if arm is type(None):
                continue
            try:
                return registry.from_variant(variant, arm, context)
            except TypeConversionError:
                continue
        raise self.fail(hint, variant)

    def to_variant(self, value, hint, registry):
        if value is None:
            return UNDEFINED
        arms = [a for a in typing.get_args(hint) if a is not type(None)]
        for arm in arms:
            try:
                return registry.to_variant(value, arm)
            except TypeConversionError:
                continue
        raise TypeConversionError(hint_name(hint), type(value).__name__)


class TupleRule(ConversionRule):
    """Fixed-arity tuples check each slot positionally; `Tuple[T, ...]` is homogeneous."""

    def accepts(self, hint, registry):
        return hint is tuple or typing.get_origin(hint) is tuple

    def supported(self, hint, registry):
        return all(a is Ellipsis or registry.supports(a) for a in typing.get_args(hint))

    def from_variant(self, variant, hint, registry, context):
        if variant.type is not VariantType.LIST:
            raise self.fail(hint, variant)
        args = typing.get_args(hint)
        items = variant.value
        if not args:
            slots = [Any] * len(items)
        elif len(args) == 2 and args[1] is Ellipsis:
            slots = [args[0]] * len(items)
        else:
            if len(args) != len(items):
                raise TypeConversionError(
                    hint_name(hint), f"list of length {len(items)}",
                    detail=f"expected exactly {len(args)} elements",
                )
            slots = list(args)
        out = []
        for i, (item, slot) in enumerate(zip(items, slots)):
            try:
                out.append(registry.from_variant(item, slot, context))
            except TypeConversionError as e:
                raise e.at(i)
        return tuple(out)

    def to_variant(self, value, hint, registry):
        if not isinstance(value, (tuple, list)):
            raise TypeConversionError(hint_name(hint), type(value).__name__)
        args = typing.get_args(hint)
        if not args:
            slots = [None] * len(value)
        elif len(args) == 2 and args[1] is Ellipsis:
            slots = [args[0]] * len(value)
        else:
            if len(args) != len(value):
                raise TypeConversionError(hint_name(hint), f"tuple of length {len(value)}")
            slots = list(args)
        out = []
        for i, (item, slot) in enumerate(zip(value, slots)):
            try:
                out.append(registry.to_variant(item, slot))
            except TypeConversionError as e:
                raise e.at(i)
        return Variant(VariantType.LIST, out)


class SequenceRule(ConversionRule):
    """Lists and sequences; each element converts on its own."""

    ORIGINS = (list, collections.abc.Sequence, collections.abc.MutableSequence, collections.abc.Iterable)

    def accepts(self, hint, registry):
        return hint is list or typing.get_origin(hint) in self.ORIGINS

    def supported(self, hint, registry):
        return all(registry.supports(a) for a in typing.get_args(hint))

    def _element(self, hint):
        args = typing.get_args(hint)
        return args[0] if args else Any

    def from_variant(self, variant, hint, registry, context):
        if variant.type is not VariantType.LIST:
            raise self.fail(hint, variant)
        elem = self._element(hint)
        out = []
        for i, item in enumerate(variant.value):
            try:
                out.append(registry.from_variant(item, elem, context))
            except TypeConversionError as e:
                raise e.at(i)
        return out

    def to_variant(self, value, hint, registry):
        if isinstance(value, (str, bytes)) or not isinstance(value, collections.abc.Iterable):
            raise TypeConversionError(hint_name(hint), type(value).__name__)
        elem = self._element(hint)
        out = []
        for i, item in enumerate(value):
            try:
                out.append(registry.to_variant(item, elem))
            except TypeConversionError as e:
                raise e.at(i)
        return Variant(VariantType.LIST, out)


class MappingRule(ConversionRule):
    """Dicts and mappings; keys and values convert independently."""

    ORIGINS = (dict, collections.abc.Mapping, collections.abc.MutableMapping)

    def accepts(self, hint, registry):
        return hint is dict or typing.get_origin(hint) in self.ORIGINS

    def supported(self, hint, registry):
        return all(registry.supports(a) for a in typing.get_args(hint))

    def _slots(self, hint):
        args = typing.get_args(hint)
        return (args[0], args[1]) if len(args) == 2 else (Any, Any)

    def from_variant(self, variant, hint, registry, context):
        if variant.type is not VariantType.DICT:
            raise self.fail(hint, variant)
        key_hint, val_hint = self._slots(hint)
        out = {}
        for k, v in variant.value:
            step = registry.hashable(k.to_host()) if k.type is not VariantType.OBJECT else k
            try:
                nk = registry.from_variant(k, key_hint, context)
                nv = registry.from_variant(v, val_hint, context)
            except TypeConversionError as e:
                raise e.at(step)
            out[registry.hashable(nk)] = nv
        return out

    def to_variant(self, value, hint, registry):
        if not isinstance(value, collections.abc.Mapping):
            raise TypeConversionError(hint_name(hint), type(value).__name__)
        key_hint, val_hint = self._slots(hint)
        pairs = []
        for k, v in value.items():
            try:
                pairs.append((registry.to_variant(k, key_hint), registry.to_variant(v, val_hint)))
            except TypeConversionError as e:
                raise e.at(k)
        return Variant(VariantType.DICT, pairs)


class ClassRule(ConversionRule):
    """Registered native classes, by value (`Shape`) or shared (`Shared[Shape]`)."""

    def _target(self, hint):
        if typing.get_origin(hint) is Shared:
            return typing.get_args(hint)[0], True
        return hint, False

    def accepts(self, hint, registry):
        cls, _ = self._target(hint)
        return isinstance(cls, type) and registry.class_registry is not None and \
            registry.class_registry.lookup_type(cls) is not None

    def from_variant(self, variant, hint, registry, context):
        cls, shared = self._target(hint)
        if variant.type is not VariantType.OBJECT:
            raise self.fail(hint, variant)
        instance = variant.value.instance
        if not isinstance(instance, cls):
            raise self.fail(hint, variant)
        if shared:
            return instance
        descriptor = registry.class_registry.lookup_type(cls)
        return descriptor.copy(instance)

    def to_variant(self, value, hint, registry):
        cls, shared = self._target(hint)
        if isinstance(value, ObjectHandle):
            value = value.instance
        if not isinstance(value, cls):
            raise TypeConversionError(hint_name(hint), type(value).__name__)
        descriptor = registry.class_registry.lookup_type(type(value)) or \
            registry.class_registry.lookup_type(cls)
        if not shared and _has_live_handle(value):
            value = descriptor.copy(value)
        return Variant(VariantType.OBJECT, ObjectHandle.create(value, descriptor))


class ClosureRule(ConversionRule):
    """`ClosureInfo` parameters receive the closure as data."""

    def accepts(self, hint, registry):
        return hint is ClosureInfo

    def from_variant(self, variant, hint, registry, context):
        if variant.type is not VariantType.CLOSURE:
            raise self.fail(hint, variant)
        return variant.value

    def to_variant(self, value, hint, registry):
        if not isinstance(value, ClosureInfo):
            raise TypeConversionError("ClosureInfo", type(value).__name__)
        return Variant(VariantType.CLOSURE, value)


class CallableRule(ConversionRule):
    """`Callable` parameters receive a function that runs the closure through the dispatcher."""

    def accepts(self, hint, registry):
        return hint is collections.abc.Callable or hint is typing.Callable or \
            typing.get_origin(hint) is collections.abc.Callable

    def from_variant(self, variant, hint, registry, context):
        if variant.type is not VariantType.CLOSURE:
            raise self.fail(hint, variant)
        if context is None or not hasattr(context, "closure_callable"):
            raise self.fail(hint, variant, detail="no dispatcher available to run the closure")
        return context.closure_callable(variant.value)

    def to_variant(self, value, hint, registry):
        if isinstance(value, ClosureInfo):
            return Variant(VariantType.CLOSURE, value)
        raise TypeConversionError("ClosureInfo", type(value).__name__,
                                  detail="only closures can be returned for callable types")


def _has_live_handle(instance: Any) -> bool:
    from xbridge.xbridge_handles import _LIVE_CELLS, _CELLS_LOCK
    with _CELLS_LOCK:
        cell = _LIVE_CELLS.get(id(instance))
        return cell is not None and cell.instance is instance


def default_rules() -> List[ConversionRule]:
    return [
        VariantRule(),
        DynamicRule(),
        NoneRule(),
        NumericRule(),
        ScalarRule(str, VariantType.STRING),
        ScalarRule(_dt.datetime, VariantType.DATETIME),
        ScalarRule(Image, VariantType.IMAGE),
        OptionalRule(),
        TupleRule(),
        SequenceRule(),
        MappingRule(),
        ClosureRule(),
        CallableRule(),
        ClassRule(),
    ]


# =================================================================
# Registry
# =================================================================

class TypeConverterRegistry:
    """Ordered rule table. Rules registered later take precedence."""

    def __init__(self, class_registry: Optional["ClassRegistry"] = None, rules: Optional[List[ConversionRule]] = None):
        self.class_registry = class_registry
        self._rules: List[ConversionRule] = list(rules if rules is not None else default_rules())

    def register(self, rule: ConversionRule) -> None:
        self._rules.insert(0, rule)

    def rule_for(self, hint: Any) -> Optional[ConversionRule]:
        for rule in self._rules:
            if rule.accepts(hint, self):
                return rule
        return None

    def supports(self, hint: Any) -> bool:
        rule = self.rule_for(hint)
        return rule is not None and rule.supported(hint, self)

    def from_variant(self, variant: Variant, hint: Any = Any, context: Any = None) -> Any:
        """Converts a variant to the native type `hint`, raising TypeConversionError."""
        if not isinstance(variant, Variant):
            variant = self.to_variant(variant)
        rule = self.rule_for(hint)
        if rule is None:
            raise TypeConversionError(hint_name(hint), _actual(variant), detail="no conversion rule for this type")
        return rule.from_variant(variant, hint, self, context)

    def to_variant(self, value: Any, hint: Any = None) -> Variant:
        """Converts a native value; with a hint the hint's rule decides the tag."""
        if hint is not None and hint is not Any and hint is not inspect.Parameter.empty:
            rule = self.rule_for(hint)
            if rule is None:
                raise TypeConversionError(hint_name(hint), type(value).__name__, detail="no conversion rule for this type")
            return rule.to_variant(value, hint, self)
        return self._infer(value)

    def _infer(self, value: Any) -> Variant:
        hook = getattr(value, "__bridge_variant__", None)
        if hook is not None and not isinstance(value, type):
            return hook()
        match value:
            case Variant():
                return value
            case None:
                return UNDEFINED
            case bool() | int():
                return Variant(VariantType.INTEGER, int(value))
            case float():
                return Variant(VariantType.FLOAT, value)
            case str():
                return Variant(VariantType.STRING, value)
            case _dt.datetime():
                return Variant(VariantType.DATETIME, value)
            case Image():
                return Variant(VariantType.IMAGE, value)
            case ClosureInfo():
                return Variant(VariantType.CLOSURE, value)
            case ObjectHandle():
                return Variant(VariantType.OBJECT, value.alias())
            case list() | tuple():
                out = []
                for i, item in enumerate(value):
                    try:
                        out.append(self._infer(item))
                    except TypeConversionError as e:
                        raise e.at(i)
                return Variant(VariantType.LIST, out)
            case collections.abc.Mapping():
                pairs = []
                for k, v in value.items():
                    try:
                        pairs.append((self._infer(k), self._infer(v)))
                    except TypeConversionError as e:
                        raise e.at(k)
                return Variant(VariantType.DICT, pairs)
        descriptor = self.class_registry.class_for_instance(value) if self.class_registry is not None else None
        if descriptor is not None:
            return Variant(VariantType.OBJECT, ObjectHandle.create(value, descriptor))
        raise TypeConversionError("a supported value", type(value).__name__)

    @staticmethod
    def hashable(value: Any) -> Any:
        if isinstance(value, list):
            return tuple(TypeConverterRegistry.hashable(v) for v in value)
        if isinstance(value, dict):
            return tuple((k, TypeConverterRegistry.hashable(v)) for k, v in value.items())
        return value


_default: Optional[TypeConverterRegistry] = None


def get_converter_registry() -> TypeConverterRegistry:
    """The process-wide converter, bound to the process-wide class registry."""
    global _default
    if _default is None:
        from xbridge.xbridge_registry import get_class_registry
        _default = TypeConverterRegistry(get_class_registry())
    return _default


def to_variant(value: Any, hint: Any = None) -> Variant:
    return get_converter_registry().to_variant(value, hint)


def from_variant(variant: Variant, hint: Any = Any, context: Any = None) -> Any:
    return get_converter_registry().from_variant(variant, hint, context)


__all__ = [
    "Shared",
    "ConversionRule",
    "TypeConverterRegistry",
    "get_converter_registry",
    "to_variant",
    "from_variant",
    "hint_name",
]
