"""
Descriptors and registries for published native functions and classes.

A module publishes itself through a `ModuleRegistration`: one declarative
`functions(...)` step builds its function table, one `classes(...)` step its
class table, and the loader reads both through the module's two accessor
functions. Class members are marked where the class is defined, with the
`bridge_method` / `bridge_getter` / `bridge_setter` decorators and the
`bridge_class` class decorator.
"""
from __future__ import annotations

import copy as _copy
import inspect
import threading
import typing
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TYPE_CHECKING

from xbridge.xbridge_config import _dbg
from xbridge.xbridge_convert import Shared, hint_name
from xbridge.xbridge_datatypes import Variant
from xbridge.xbridge_errors import (
    BridgeError, NativeException, RegistrationError, TypeConversionError,
)

if TYPE_CHECKING:
    from xbridge.xbridge_convert import TypeConverterRegistry


EMIT_PARAM = "emit"
_NO_DEFAULT = inspect.Parameter.empty


# =================================================================
# Callable descriptors
# =================================================================

@dataclass(frozen=True)
class ParamSpec:
    name: str           # public name, as the host addresses it
    hint: Any
    default: Any = _NO_DEFAULT

    @property
    def required(self) -> bool:
        return self.default is _NO_DEFAULT


class CallableDescriptor:
    """Name, signature and erased invoker for one published function or method.

    For methods the first entry of `params` is the instance slot; it is not
    part of the host-visible `param_names`.
    """

    def __init__(self, name: str, entry: Callable, params: Sequence[ParamSpec],
                 return_hint: Any = _NO_DEFAULT, doc: Optional[str] = None,
                 internal_name: Optional[str] = None, accepts_emit: bool = False,
                 is_method: bool = False):
        self.name = name
        self.entry = entry
        self.params: Tuple[ParamSpec, ...] = tuple(params)
        self.return_hint = return_hint
        self.doc = doc
        self.internal_name = internal_name or getattr(entry, "__qualname__", name)
        self.accepts_emit = accepts_emit
        self.is_method = is_method

    @property
    def host_params(self) -> Tuple[ParamSpec, ...]:
        return self.params[1:] if self.is_method else self.params

    @property
    def param_names(self) -> List[str]:
        return [p.name for p in self.host_params]

    @property
    def arity(self) -> int:
        return len(self.host_params)

    @classmethod
    def from_function(cls, fn: Callable, name: Optional[str] = None,
                      params: Optional[Sequence[str]] = None, doc: Optional[str] = None,
                      *, owner: Optional[type] = None) -> 'CallableDescriptor':
        """Builds a descriptor from an annotated Python function.

        `params` renames the parameters for the host; its length must match the
        function's. With `owner`, the first parameter is the instance slot and
        is typed `Shared[owner]`.
        """
        public = name or fn.__name__
        try:
            sig = inspect.signature(fn)
        except (TypeError, ValueError) as e:
            raise RegistrationError(f"cannot inspect signature of {public!r}: {e}")
        localns = {owner.__name__: owner} if owner is not None else None
        try:
            hints = typing.get_type_hints(fn, localns=localns)
        except Exception as e:
            raise RegistrationError(f"cannot resolve annotations of {public!r}: {e}")

        accepts_emit = False
        specs: List[ParamSpec] = []
        for p in sig.parameters.values():
            if p.kind is inspect.Parameter.KEYWORD_ONLY and p.name == EMIT_PARAM:
                accepts_emit = True
                continue
            if p.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
                raise RegistrationError(f"{public!r}: variadic parameter {p.name!r} cannot be published")
            if p.kind is inspect.Parameter.KEYWORD_ONLY:
                raise RegistrationError(f"{public!r}: keyword-only parameter {p.name!r} cannot be published")
            specs.append(ParamSpec(p.name, hints.get(p.name, _NO_DEFAULT), p.default))

        if owner is not None:
            if not specs:
                raise RegistrationError(f"{public!r}: a method needs an instance parameter")
            specs[0] = ParamSpec(specs[0].name, Shared[owner])

        if params is not None:
            visible = specs[1:] if owner is not None else specs
            if len(params) != len(visible):
                raise RegistrationError(
                    f"{public!r}: {len(params)} parameter name(s) given for {len(visible)} parameter(s)"
                )
            if len(set(params)) != len(params):
                raise RegistrationError(f"{public!r}: duplicate parameter names {list(params)!r}")
            renamed = [ParamSpec(n, s.hint, s.default) for n, s in zip(params, visible)]
            specs = ([specs[0]] + renamed) if owner is not None else renamed

        return cls(
            public, fn, specs,
            return_hint=hints.get("return", _NO_DEFAULT),
            doc=doc if doc is not None else inspect.getdoc(fn),
            internal_name=getattr(fn, "__qualname__", public),
            accepts_emit=accepts_emit,
            is_method=owner is not None,
        )

    def check(self, converters: "TypeConverterRegistry") -> None:
        """Raises RegistrationError when a parameter or return type is not marshallable."""
        for p in self.params:
            if not converters.supports(p.hint):
                raise RegistrationError(
                    f"{self.name!r}: parameter {p.name!r} has unsupported type {hint_name(p.hint)}"
                )
        if not converters.supports(self.return_hint):
            raise RegistrationError(
                f"{self.name!r}: unsupported return type {hint_name(self.return_hint)}"
            )

    def marshal(self, args: Sequence[Any], converters: "TypeConverterRegistry", context: Any = None) -> List[Any]:
        """Converts every argument before anything runs; the first failure aborts."""
        natives = []
        for i, (spec, arg) in enumerate(zip(self.params, args)):
            if arg is _NO_DEFAULT:
                natives.append(spec.default)
                continue
            try:
                if not isinstance(arg, Variant):
                    arg = converters.to_variant(arg)
                natives.append(converters.from_variant(arg, spec.hint, context))
            except TypeConversionError as e:
                raise e.for_param(spec.name, i - 1 if self.is_method else i)
        return natives

    def invoke(self, args: Sequence[Any], converters: "TypeConverterRegistry",
               context: Any = None, emit: Optional[Callable[[str], None]] = None) -> Variant:
        """The erased entry point: Variants in, Variant out."""
        natives = self.marshal(args, converters, context)
        kwargs = {EMIT_PARAM: emit} if self.accepts_emit and emit is not None else {}
        _dbg("invoke", self.name, "argc", len(natives))
        try:
            result = self.entry(*natives, **kwargs)
        except BridgeError:
            raise
        except Exception as e:
            raise NativeException(str(e), type(e).__name__) from e
        try:
            return converters.to_variant(result, self.return_hint)
        except TypeConversionError as e:
            e.detail = f"return value of {self.name!r}"
            e.message = e._build_message()
            e.args = (e.message,)
            raise

    def __repr__(self) -> str:
        return f"<CallableDescriptor {self.name}({', '.join(self.param_names)})>"


# =================================================================
# Class members
# =================================================================

def bridge_method(func=None, *, name: Optional[str] = None, params: Optional[Sequence[str]] = None):
    """Marks a method as callable from the host."""
    def mark(f):
        f._bridge_member = ("method", name or f.__name__, params)
        return f
    if func is not None:
        return mark(func)
    return mark


def bridge_getter(name: str):
    """Marks a zero-argument method as the getter of property `name`."""
    def mark(f):
        f._bridge_member = ("getter", name, None)
        return f
    return mark


def bridge_setter(name: str):
    """Marks a one-argument method as the setter of property `name`."""
    def mark(f):
        f._bridge_member = ("setter", name, None)
        return f
    return mark


def bridge_class(name: Optional[str] = None, *, fields: Optional[Dict[str, Any]] = None,
                 copy: Optional[Callable[[Any], Any]] = None, doc: Optional[str] = None):
    """Marks a class for publication.

    `fields` exposes plain attributes as read/write properties ({name: type}).
    `copy` is the by-value copy operation (default: copy.deepcopy). The
    descriptor itself is built when the module's `classes(...)` step runs.
    """
    def mark(cls):
        if not isinstance(cls, type):
            raise RegistrationError("bridge_class decorates classes only")
        cls.__bridge_spec__ = {
            "name": name or cls.__name__,
            "fields": dict(fields or {}),
            "copy": copy,
            "doc": doc,
        }
        return cls
    return mark


def _field_getter(attr: str):
    def get(self):
        return getattr(self, attr)
    get.__qualname__ = f"get_{attr}"
    return get


def _field_setter(attr: str):
    def set_(self, value):
        setattr(self, attr, value)
    set_.__qualname__ = f"set_{attr}"
    return set_


# Members the host-side object proxy defines itself; a published class may not
# use them as method or property names.
RESERVED_MEMBER_NAMES = frozenset({"copy", "alias", "release", "handle", "class_name"})


class ClassDescriptor:
    """Public name plus method, getter, setter and default-property tables."""

    def __init__(self, name: str, py_type: type,
                 methods: Dict[str, CallableDescriptor],
                 getters: Dict[str, CallableDescriptor],
                 setters: Dict[str, CallableDescriptor],
                 fields: Optional[Dict[str, Any]] = None,
                 copy: Optional[Callable[[Any], Any]] = None,
                 doc: Optional[str] = None):
        self.name = name
        self.py_type = py_type
        self.methods = dict(methods)
        self.getters = dict(getters)
        self.setters = dict(setters)
        self.fields = dict(fields or {})
        self._copy = copy
        self.doc = doc

    @classmethod
    def from_class(cls, py_type: type) -> 'ClassDescriptor':
        spec = py_type.__dict__.get("__bridge_spec__")
        if spec is None:
            raise RegistrationError(f"{py_type.__name__} is not marked with @bridge_class")
        public = spec["name"]
        methods: Dict[str, CallableDescriptor] = {}
        getters: Dict[str, CallableDescriptor] = {}
        setters: Dict[str, CallableDescriptor] = {}

        for attr, member in inspect.getmembers(py_type, predicate=inspect.isfunction):
            mark = getattr(member, "_bridge_member", None)
            if mark is None:
                continue
            kind, name, params = mark
            table = {"method": methods, "getter": getters, "setter": setters}[kind]
            if name in table:
                raise RegistrationError(f"{public}: {kind} {name!r} registered twice")
            desc = CallableDescriptor.from_function(
                member, name=name, params=params, owner=py_type,
                doc=inspect.getdoc(member),
            )
            if kind == "getter" and desc.arity != 0:
                raise RegistrationError(f"{public}: getter {name!r} must take no arguments")
            if kind == "setter" and desc.arity != 1:
                raise RegistrationError(f"{public}: setter {name!r} must take exactly one argument")
            table[name] = desc

        for fname, fhint in spec["fields"].items():
            if fname in getters or fname in setters:
                raise RegistrationError(f"{public}: property {fname!r} registered twice")
            getter = _field_getter(fname)
            getter.__annotations__ = {"return": fhint}
            setter = _field_setter(fname)
            setter.__annotations__ = {"value": fhint, "return": type(None)}
            getters[fname] = CallableDescriptor.from_function(getter, name=fname, owner=py_type)
            setters[fname] = CallableDescriptor.from_function(setter, name=fname, owner=py_type)

        for member_name in set(methods) | set(getters) | set(setters):
            if member_name in RESERVED_MEMBER_NAMES:
                raise RegistrationError(f"{public}: member name {member_name!r} is reserved")
        for pname in set(getters) | set(setters):
            if pname in methods:
                raise RegistrationError(f"{public}: {pname!r} is both a method and a property")
        for pname in set(getters) & set(setters):
            got = getters[pname].return_hint
            want = setters[pname].host_params[0].hint
            if got != want:
                raise RegistrationError(
                    f"{public}: getter and setter of {pname!r} disagree on type "
                    f"({hint_name(got)} vs {hint_name(want)})"
                )

        return cls(public, py_type, methods, getters, setters,
                   fields=spec["fields"], copy=spec["copy"],
                   doc=spec["doc"] if spec["doc"] is not None else inspect.getdoc(py_type))

    def method(self, name: str) -> Optional[CallableDescriptor]:
        return self.methods.get(name)

    def getter(self, name: str) -> Optional[CallableDescriptor]:
        return self.getters.get(name)

    def setter(self, name: str) -> Optional[CallableDescriptor]:
        return self.setters.get(name)

    def property_names(self) -> List[str]:
        return sorted(set(self.getters) | set(self.setters))

    def member_descriptors(self) -> List[CallableDescriptor]:
        return list(self.methods.values()) + list(self.getters.values()) + list(self.setters.values())

    def new_instance(self) -> Any:
        return self.py_type()

    def copy(self, instance: Any) -> Any:
        if self._copy is not None:
            return self._copy(instance)
        return _copy.deepcopy(instance)

    def check(self, converters: "TypeConverterRegistry") -> None:
        for desc in self.member_descriptors():
            desc.check(converters)

    def __repr__(self) -> str:
        return f"<ClassDescriptor {self.name} methods={sorted(self.methods)} properties={self.property_names()}>"


# =================================================================
# Registries
# =================================================================

class FunctionRegistry:
    """Process-wide name -> CallableDescriptor table."""

    def __init__(self):
        self._functions: Dict[str, CallableDescriptor] = {}
        self._owners: Dict[str, Optional[str]] = {}
        self._lock = threading.RLock()

    def register_function(self, descriptor: CallableDescriptor, module: Optional[str] = None) -> None:
        with self._lock:
            if descriptor.name in self._functions:
                owner = self._owners.get(descriptor.name)
                raise RegistrationError(
                    f"function {descriptor.name!r} is already registered"
                    + (f" by module {owner!r}" if owner else "")
                )
            self._functions[descriptor.name] = descriptor
            self._owners[descriptor.name] = module
        _dbg("registered function", descriptor.name, "module", module)

    def lookup_function(self, name: str) -> Optional[CallableDescriptor]:
        return self._functions.get(name)

    def lookup_native(self, fn: Callable) -> Optional[str]:
        """Registry key of a native callable, by identity."""
        with self._lock:
            for key, desc in self._functions.items():
                if desc.entry is fn:
                    return key
        return None

    def unregister_module(self, module: str) -> List[str]:
        with self._lock:
            names = [n for n, owner in self._owners.items() if owner == module]
            for n in names:
                del self._functions[n]
                del self._owners[n]
        return names

    def names(self) -> List[str]:
        return sorted(self._functions)

    def module_of(self, name: str) -> Optional[str]:
        return self._owners.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._functions

    def __len__(self) -> int:
        return len(self._functions)


class ClassRegistry:
    """Process-wide name -> ClassDescriptor table, with a reverse index by type."""

    def __init__(self):
        self._classes: Dict[str, ClassDescriptor] = {}
        self._by_type: Dict[type, ClassDescriptor] = {}
        self._owners: Dict[str, Optional[str]] = {}
        self._lock = threading.RLock()

    def register_class(self, descriptor: ClassDescriptor, module: Optional[str] = None) -> None:
        with self._lock:
            if descriptor.name in self._classes:
                raise RegistrationError(f"class {descriptor.name!r} is already registered")
            if descriptor.py_type in self._by_type:
                raise RegistrationError(
                    f"type {descriptor.py_type.__qualname__} is already registered as "
                    f"{self._by_type[descriptor.py_type].name!r}"
                )
            self._classes[descriptor.name] = descriptor
            self._by_type[descriptor.py_type] = descriptor
            self._owners[descriptor.name] = module
        _dbg("registered class", descriptor.name, "module", module)

    def lookup_class(self, name: str) -> Optional[ClassDescriptor]:
        return self._classes.get(name)

    def lookup_type(self, py_type: type) -> Optional[ClassDescriptor]:
        return self._by_type.get(py_type)

    def class_for_instance(self, obj: Any) -> Optional[ClassDescriptor]:
        for base in type(obj).__mro__:
            desc = self._by_type.get(base)
            if desc is not None:
                return desc
        return None

    def unregister_module(self, module: str) -> List[str]:
        with self._lock:
            names = [n for n, owner in self._owners.items() if owner == module]
            for n in names:
                desc = self._classes.pop(n)
                self._by_type.pop(desc.py_type, None)
                del self._owners[n]
        return names

    def names(self) -> List[str]:
        return sorted(self._classes)

    def __contains__(self, name: str) -> bool:
        return name in self._classes

    def __len__(self) -> int:
        return len(self._classes)


# Module-level singletons
_function_registry: Optional[FunctionRegistry] = None
_class_registry: Optional[ClassRegistry] = None


def get_function_registry() -> FunctionRegistry:
    global _function_registry
    if _function_registry is None:
        _function_registry = FunctionRegistry()
    return _function_registry


def get_class_registry() -> ClassRegistry:
    global _class_registry
    if _class_registry is None:
        _class_registry = ClassRegistry()
    return _class_registry


# =================================================================
# Module registration surface
# =================================================================

FUNCTION_ACCESSOR = "get_toolkit_function_registration"
CLASS_ACCESSOR = "get_toolkit_class_registration"


@dataclass(frozen=True)
class FunctionEntry:
    """One row of a module's function table."""
    fn: Callable
    name: Optional[str] = None
    params: Optional[Tuple[str, ...]] = None
    doc: Optional[str] = None

    @property
    def internal_name(self) -> str:
        return getattr(self.fn, "__qualname__", repr(self.fn))

    @property
    def public_name(self) -> str:
        return self.name or self.fn.__name__


def export(fn: Callable, name: Optional[str] = None, params: Optional[Sequence[str]] = None,
           doc: Optional[str] = None) -> FunctionEntry:
    return FunctionEntry(fn, name, tuple(params) if params is not None else None, doc)


class ModuleRegistration:
    """Builds a module's two registration tables, each exactly once."""

    def __init__(self, module_name: str):
        self.module_name = module_name
        self._functions: Optional[List[CallableDescriptor]] = None
        self._classes: Optional[List[ClassDescriptor]] = None

    def functions(self, *entries: Any) -> 'ModuleRegistration':
        if self._functions is not None:
            raise RegistrationError(f"module {self.module_name!r} registered its functions twice")
        table: List[CallableDescriptor] = []
        seen = set()
        for entry in entries:
            if not isinstance(entry, FunctionEntry):
                if not callable(entry):
                    raise RegistrationError(f"cannot register {entry!r}: not callable")
                entry = export(entry)
            if entry.public_name in seen:
                raise RegistrationError(
                    f"module {self.module_name!r} registers function {entry.public_name!r} twice"
                )
            seen.add(entry.public_name)
            table.append(CallableDescriptor.from_function(entry.fn, entry.name, entry.params, entry.doc))
        self._functions = table
        return self

    def classes(self, *types: type) -> 'ModuleRegistration':
        if self._classes is not None:
            raise RegistrationError(f"module {self.module_name!r} registered its classes twice")
        table: List[ClassDescriptor] = []
        seen = set()
        for t in types:
            desc = ClassDescriptor.from_class(t)
            if desc.name in seen:
                raise RegistrationError(f"module {self.module_name!r} registers class {desc.name!r} twice")
            seen.add(desc.name)
            table.append(desc)
        self._classes = table
        return self

    def function_table(self) -> List[CallableDescriptor]:
        return list(self._functions or [])

    def class_table(self) -> List[ClassDescriptor]:
        return list(self._classes or [])


__all__ = [
    "ParamSpec",
    "CallableDescriptor",
    "ClassDescriptor",
    "RESERVED_MEMBER_NAMES",
    "FunctionRegistry",
    "ClassRegistry",
    "ModuleRegistration",
    "FunctionEntry",
    "export",
    "bridge_method",
    "bridge_getter",
    "bridge_setter",
    "bridge_class",
    "get_function_registry",
    "get_class_registry",
    "FUNCTION_ACCESSOR",
    "CLASS_ACCESSOR",
]
