"""
The host-side facade.

`Bridge` wires the registries, converters, dispatcher and loader together and
exposes them the way host code wants to use them: functions as attributes of
`bridge.functions`, native instances as `HostObject` proxies, closures as
plain Python callables captured from lambdas.
"""
from __future__ import annotations

import inspect
from typing import Any, Dict, List, Optional, Sequence, Union

import httpx

from xbridge.xbridge_closure import capture, check_closure
from xbridge.xbridge_convert import TypeConverterRegistry
from xbridge.xbridge_datatypes import ClosureArg, ClosureInfo, Variant, VariantType
from xbridge.xbridge_dispatch import Dispatcher, DispatchResult
from xbridge.xbridge_errors import ObjectHandleError, UnknownNameError
from xbridge.xbridge_handles import ObjectHandle
from xbridge.xbridge_loader import ModuleLoader
from xbridge.xbridge_printer import Printer, describe_class, describe_function
from xbridge.xbridge_registry import ClassRegistry, FunctionRegistry
from xbridge.xbridge_serialize import dump_closure, load_closure


class FunctionProxy:
    """A host-side stand-in for one registered function."""

    def __init__(self, bridge: 'Bridge', name: str):
        self._bridge = bridge
        self.__bridge_function__ = name
        self.__name__ = name

    def __call__(self, *args, **kwargs):
        return self._bridge.call(self.__bridge_function__, *args, **kwargs)

    def __bridge_variant__(self) -> Variant:
        desc = self._bridge.functions_registry.lookup_function(self.__bridge_function__)
        n = desc.arity if desc is not None else 0
        return Variant(VariantType.CLOSURE,
                       ClosureInfo(self.__bridge_function__, [ClosureArg.param(i) for i in range(n)], n))

    def __repr__(self) -> str:
        return f"<function {self.__bridge_function__}>"


class FunctionNamespace:
    """`bridge.functions.<name>` lookup over the live function registry."""

    def __init__(self, bridge: 'Bridge'):
        self._bridge = bridge

    def __getattr__(self, name: str) -> FunctionProxy:
        if name.startswith("__") or name not in self._bridge.functions_registry:
            raise AttributeError(f"no function named {name!r} is registered")
        return FunctionProxy(self._bridge, name)

    def __getitem__(self, name: str) -> FunctionProxy:
        if name not in self._bridge.functions_registry:
            raise UnknownNameError(f"no function named {name!r} is registered", name)
        return FunctionProxy(self._bridge, name)

    def __contains__(self, name: str) -> bool:
        return name in self._bridge.functions_registry

    def __dir__(self) -> List[str]:
        return self._bridge.functions_registry.names()


class HostObject:
    """A proxy for a native instance held through an ObjectHandle.

    Attribute reads resolve to methods (as bound callables) or property
    getters; attribute writes go to property setters. The proxy's own
    members are in `RESERVED_MEMBER_NAMES`, which published classes may not use.
    """

    __slots__ = ("_bridge", "_handle")

    def __init__(self, bridge: 'Bridge', handle: ObjectHandle):
        object.__setattr__(self, "_bridge", bridge)
        object.__setattr__(self, "_handle", handle)

    @property
    def handle(self) -> ObjectHandle:
        return self._handle

    @property
    def class_name(self) -> str:
        return self._handle.class_name

    def _descriptor(self):
        _, cdesc = self._bridge.dispatcher._resolve(self._handle)
        return cdesc

    def __getattr__(self, name: str) -> Any:
        if name.startswith("__"):
            raise AttributeError(name)
        cdesc = self._descriptor()
        if cdesc.method(name) is not None:
            def bound(*args, **kwargs):
                result = self._bridge.dispatcher.invoke_method(
                    self._handle, name,
                    [self._bridge._prepare(a) for a in args],
                    {k: self._bridge._prepare(v) for k, v in kwargs.items()} or None,
                )
                return self._bridge._to_host(result.unwrap())
            bound.__name__ = name
            return bound
        if cdesc.getter(name) is not None:
            result = self._bridge.dispatcher.invoke_property_get(self._handle, name)
            return self._bridge._to_host(result.unwrap())
        raise AttributeError(f"{cdesc.name!r} object has no attribute {name!r}")

    def __setattr__(self, name: str, value: Any) -> None:
        cdesc = self._descriptor()
        if cdesc.setter(name) is None:
            raise AttributeError(f"{cdesc.name!r} object has no writable property {name!r}")
        self._bridge.dispatcher.invoke_property_set(self._handle, name, self._bridge._prepare(value)).unwrap()

    def copy(self) -> 'HostObject':
        """A new, independent instance (pass by value)."""
        return HostObject(self._bridge, self._bridge.dispatcher.copy_object(self._handle).unwrap().value)

    def alias(self) -> 'HostObject':
        """Another proxy sharing this instance (pass by reference)."""
        return HostObject(self._bridge, self._handle.alias())

    def release(self) -> None:
        self._handle.release()

    def __bridge_variant__(self) -> Variant:
        if not self._handle.is_valid:
            raise ObjectHandleError("object handle has been released")
        return Variant(VariantType.OBJECT, self._handle)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False

    def __eq__(self, other):
        return isinstance(other, HostObject) and self._handle == other._handle

    def __hash__(self):
        return hash(self._handle)

    def __repr__(self) -> str:
        return self._bridge.printer.pformat(self._handle)


class Bridge:
    """Owns one set of registries and everything that works on them."""

    def __init__(self, *, functions: Optional[FunctionRegistry] = None,
                 classes: Optional[ClassRegistry] = None,
                 converters: Optional[TypeConverterRegistry] = None,
                 sink: Any = None,
                 http_client: Optional[httpx.Client] = None):
        self.functions_registry = functions if functions is not None else FunctionRegistry()
        self.classes_registry = classes if classes is not None else ClassRegistry()
        self.converters = converters if converters is not None else TypeConverterRegistry(self.classes_registry)
        self.dispatcher = Dispatcher(self.functions_registry, self.classes_registry, self.converters, sink)
        self.loader = ModuleLoader(self.functions_registry, self.classes_registry, self.converters, http_client)
        self.printer = Printer()
        self.functions = FunctionNamespace(self)

    # --- modules ---
    def load_module(self, locator: Any) -> str:
        return self.loader.load(locator)

    def unload_module(self, name: str) -> List[str]:
        return self.loader.unload(name)

    def loaded_modules(self) -> List[str]:
        return self.loader.loaded()

    # --- values ---
    def _prepare(self, value: Any) -> Any:
        """Host value to dispatcher argument; plain functions are captured as closures."""
        if inspect.isfunction(value) and not hasattr(value, "__bridge_function__"):
            return Variant(VariantType.CLOSURE, self.capture(value))
        return value

    def _to_host(self, value: Variant) -> Any:
        if value.type is VariantType.OBJECT:
            return HostObject(self, value.value.alias())
        if value.type is VariantType.CLOSURE:
            return self.dispatcher.closure_callable(value.value)
        return self.converters.from_variant(value, Any, self.dispatcher)

    # --- calls ---
    def invoke(self, name: str, *args, **kwargs) -> DispatchResult:
        """Calls a function; the outcome, success or error, is in the result."""
        return self.dispatcher.invoke(name, [self._prepare(a) for a in args],
                                      {k: self._prepare(v) for k, v in kwargs.items()} or None)

    def call(self, name: str, *args, **kwargs) -> Any:
        """Calls a function and returns its host value, raising on failure."""
        return self._to_host(self.invoke(name, *args, **kwargs).unwrap())

    def new(self, class_name: str) -> HostObject:
        handle = self.dispatcher.create_object(class_name).unwrap().value
        return HostObject(self, handle)

    # --- closures ---
    def capture(self, fn: Any) -> ClosureInfo:
        return capture(fn, self.functions_registry, self.converters)

    def call_closure(self, closure: Union[ClosureInfo, Any], *args) -> Any:
        if not isinstance(closure, ClosureInfo):
            closure = self.capture(closure)
        result = self.dispatcher.invoke_closure(closure, [self._prepare(a) for a in args])
        return self._to_host(result.unwrap())

    def dump_closure(self, closure: Union[ClosureInfo, Any], *, fmt: str = 'json') -> str:
        if not isinstance(closure, ClosureInfo):
            closure = self.capture(closure)
        return dump_closure(closure, fmt=fmt)

    def restore_closure(self, data: Union[str, bytes], *, fmt: Optional[str] = None) -> ClosureInfo:
        """Reads a persisted closure; every function it names must be registered."""
        return check_closure(load_closure(data, fmt=fmt), self.functions_registry)

    # --- introspection ---
    def describe(self, name: str) -> str:
        desc = self.functions_registry.lookup_function(name)
        if desc is not None:
            return describe_function(desc)
        cdesc = self.classes_registry.lookup_class(name)
        if cdesc is not None:
            return describe_class(cdesc)
        raise UnknownNameError(f"no function or class named {name!r} is registered", name)

    def catalog(self) -> Dict[str, List[str]]:
        return {"functions": self.functions_registry.names(), "classes": self.classes_registry.names()}


__all__ = ["Bridge", "HostObject", "FunctionProxy", "FunctionNamespace"]
