"""
The dispatcher: the single boundary between host callers and native code.

Every entry point resolves a name, binds and marshals the arguments, runs the
native code under the host lock and hands back a `DispatchResult`. Nothing
raised below this layer escapes it.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Literal, Mapping, Optional, Sequence

from xbridge.xbridge_config import _dbg
from xbridge.xbridge_convert import TypeConverterRegistry
from xbridge.xbridge_datatypes import Variant, VariantType, ClosureInfo, UNDEFINED
from xbridge.xbridge_errors import (
    ArityError, BridgeError, NativeException, ObjectHandleError, UnknownNameError,
)
from xbridge.xbridge_handles import ObjectHandle
from xbridge.xbridge_registry import (
    CallableDescriptor, ClassDescriptor, ClassRegistry, FunctionRegistry,
    get_class_registry, get_function_registry, _NO_DEFAULT,
)


# At most one dispatch runs inside the host at a time. Re-entrant so native
# code may call back into the dispatcher on the same thread.
_HOST_LOCK = threading.RLock()

_MISSING = object()


class ListSink:
    """A progress sink that keeps every message."""

    def __init__(self):
        self.messages: List[str] = []

    def emit(self, message: str) -> None:
        self.messages.append(message)


@dataclass
class DispatchResult:
    """The structured outcome of one dispatch."""
    status: Literal['success', 'error']
    value: Variant = UNDEFINED
    error: Optional[BridgeError] = None
    side_effects: List[Dict] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == 'success'

    @property
    def error_message(self) -> Optional[str]:
        return None if self.error is None else self.error.message

    def format_error(self) -> str:
        if self.status != 'error' or self.error is None:
            return ""
        return f"{self.error.kind}: {self.error.message}"

    def unwrap(self) -> Variant:
        """Returns the value, or raises the captured error."""
        if self.error is not None:
            raise self.error
        return self.value


class Dispatcher:
    """Resolves names to descriptors and executes marshaled calls."""

    def __init__(self, functions: Optional[FunctionRegistry] = None,
                 classes: Optional[ClassRegistry] = None,
                 converters: Optional[TypeConverterRegistry] = None,
                 sink: Any = None):
        self.functions = functions if functions is not None else get_function_registry()
        self.classes = classes if classes is not None else get_class_registry()
        self.converters = converters if converters is not None else TypeConverterRegistry(self.classes)
        self.sink = sink
        self._local = threading.local()

    # --- public entry points ---
    def invoke(self, name: str, args: Sequence[Any] = (), kwargs: Optional[Mapping[str, Any]] = None) -> DispatchResult:
        """Calls a registered function by name."""
        def run():
            desc = self.functions.lookup_function(name)
            if desc is None:
                raise UnknownNameError(f"no function named {name!r} is registered", name)
            bound = self._bind(desc, args, kwargs)
            return desc.invoke(bound, self.converters, self, self._emit)
        return self._run(name, run)

    def invoke_method(self, handle: Any, name: str, args: Sequence[Any] = (),
                      kwargs: Optional[Mapping[str, Any]] = None) -> DispatchResult:
        def run():
            h, cdesc = self._resolve(handle)
            desc = cdesc.method(name)
            if desc is None:
                raise UnknownNameError(f"class {cdesc.name!r} has no method {name!r}", name)
            bound = self._bind(desc, args, kwargs)
            return desc.invoke([Variant(VariantType.OBJECT, h)] + bound, self.converters, self, self._emit)
        return self._run(name, run)

    def invoke_property_get(self, handle: Any, name: str) -> DispatchResult:
        def run():
            h, cdesc = self._resolve(handle)
            desc = cdesc.getter(name)
            if desc is None:
                raise UnknownNameError(f"class {cdesc.name!r} has no readable property {name!r}", name)
            return desc.invoke([Variant(VariantType.OBJECT, h)], self.converters, self, self._emit)
        return self._run(name, run)

    def invoke_property_set(self, handle: Any, name: str, value: Any) -> DispatchResult:
        def run():
            h, cdesc = self._resolve(handle)
            desc = cdesc.setter(name)
            if desc is None:
                raise UnknownNameError(f"class {cdesc.name!r} has no writable property {name!r}", name)
            desc.invoke([Variant(VariantType.OBJECT, h), value], self.converters, self, self._emit)
            return UNDEFINED
        return self._run(name, run)

    def create_object(self, class_name: str) -> DispatchResult:
        """Constructs a fresh instance; the returned handle is its only holder."""
        def run():
            cdesc = self.classes.lookup_class(class_name)
            if cdesc is None:
                raise UnknownNameError(f"no class named {class_name!r} is registered", class_name)
            try:
                instance = cdesc.new_instance()
            except Exception as e:
                raise NativeException(str(e), type(e).__name__) from e
            return Variant(VariantType.OBJECT, ObjectHandle.create(instance, cdesc))
        return self._run(class_name, run)

    def copy_object(self, handle: Any) -> DispatchResult:
        """Passes an instance by value: a new independent instance with its own handle."""
        def run():
            h, cdesc = self._resolve(handle)
            try:
                clone = h.copy_by_value(cdesc.copy)
            except BridgeError:
                raise
            except Exception as e:
                raise NativeException(str(e), type(e).__name__) from e
            return Variant(VariantType.OBJECT, clone)
        return self._run("copy", run)

    def invoke_closure(self, closure: Any, args: Sequence[Any] = ()) -> DispatchResult:
        """Runs a closure; its function key is resolved now, not at capture time."""
        def run():
            info = closure.value if isinstance(closure, Variant) and closure.type is VariantType.CLOSURE else closure
            if not isinstance(info, ClosureInfo):
                raise UnknownNameError(f"not a closure: {closure!r}")
            variants = [a if isinstance(a, Variant) else self.converters.to_variant(a) for a in args]
            bound = info.bind(variants)
            desc = self.functions.lookup_function(info.function)
            if desc is None:
                raise UnknownNameError(
                    f"closure refers to function {info.function!r}, which is not registered", info.function
                )
            return desc.invoke(self._bind(desc, bound, None), self.converters, self, self._emit)
        return self._run(getattr(closure, "function", "closure"), run)

    def closure_callable(self, closure: ClosureInfo) -> Callable[..., Any]:
        """A native-side callable that runs `closure` through this dispatcher."""
        def call(*args):
            value = self.invoke_closure(closure, args).unwrap()
            return self.converters.from_variant(value, Any, self)
        call.__name__ = f"closure_{closure.function}"
        call.closure = closure
        return call

    # --- internals ---
    def _emit(self, message: Any) -> None:
        text = str(message)
        stack = getattr(self._local, "effects", None)
        if stack:
            stack[-1].append({"topics": ["progress"], "message": text})
        if self.sink is not None:
            self.sink.emit(text)

    def _run(self, label: str, thunk: Callable[[], Variant]) -> DispatchResult:
        stack = getattr(self._local, "effects", None)
        if stack is None:
            stack = self._local.effects = []
        effects: List[Dict] = []
        stack.append(effects)
        try:
            with _HOST_LOCK:
                _dbg("dispatch", label, "depth", len(stack))
                try:
                    value = thunk()
                    return DispatchResult(status='success', value=value, side_effects=effects)
                except BridgeError as e:
                    error = e
                except Exception as e:
                    error = NativeException(str(e), type(e).__name__)
                _dbg("dispatch failed", label, error.kind, error.message)
                effects.append({"topics": ["stderr"], "message": f"{error.kind}: {error.message}"})
                return DispatchResult(status='error', error=error, side_effects=effects)
        finally:
            stack.pop()
            if stack:
                stack[-1].extend(effects)

    def _bind(self, desc: CallableDescriptor, args: Sequence[Any], kwargs: Optional[Mapping[str, Any]]) -> List[Any]:
        """Orders positional and named arguments against the declared parameters."""
        params = desc.host_params
        args = list(args)
        if not kwargs:
            if len(args) != len(params):
                raise ArityError(
                    f"{desc.name} expects {len(params)} argument(s), got {len(args)}"
                )
            return args
        if len(args) > len(params):
            raise ArityError(f"{desc.name} expects at most {len(params)} argument(s), got {len(args)}")
        slots: List[Any] = args + [_MISSING] * (len(params) - len(args))
        index = {p.name: i for i, p in enumerate(params)}
        for key, value in kwargs.items():
            if key not in index:
                raise UnknownNameError(f"{desc.name} has no parameter named {key!r}", key)
            i = index[key]
            if slots[i] is not _MISSING:
                raise ArityError(f"{desc.name} got multiple values for parameter {key!r}")
            slots[i] = value
        missing = [p.name for p, s in zip(params, slots) if s is _MISSING and p.required]
        if missing:
            raise ArityError(f"{desc.name} is missing required argument(s): {', '.join(missing)}")
        return [_NO_DEFAULT if s is _MISSING else s for s in slots]

    def _resolve(self, handle: Any):
        """Returns the live handle and its class descriptor."""
        hook = getattr(handle, "__bridge_variant__", None)
        if hook is not None:
            handle = hook()
        if isinstance(handle, Variant):
            if handle.type is not VariantType.OBJECT:
                raise ObjectHandleError(f"expected an object, got {handle.type.value}")
            handle = handle.value
        if not isinstance(handle, ObjectHandle):
            raise ObjectHandleError(f"expected an object handle, got {type(handle).__name__}")
        instance = handle.instance
        cdesc: Optional[ClassDescriptor] = handle.descriptor or self.classes.class_for_instance(instance)
        if cdesc is None:
            raise UnknownNameError(f"class {type(instance).__name__!r} is not registered")
        return handle, cdesc


__all__ = ["Dispatcher", "DispatchResult", "ListSink"]
