from typing import Dict, List

import pytest

from xbridge.xbridge_convert import Shared, TypeConverterRegistry
from xbridge.xbridge_errors import RegistrationError
from xbridge.xbridge_registry import (
    CallableDescriptor, ClassDescriptor, ClassRegistry, FunctionRegistry, ModuleRegistration,
    bridge_class, bridge_getter, bridge_method, bridge_setter, export,
)


def add(a: int, b: int = 2) -> int:
    return a + b


def test_descriptor_reads_signature():
    desc = CallableDescriptor.from_function(add)
    assert desc.name == "add"
    assert desc.param_names == ["a", "b"]
    assert desc.arity == 2
    assert desc.params[0].required
    assert not desc.params[1].required
    assert desc.return_hint is int


def test_descriptor_renames_parameters():
    desc = CallableDescriptor.from_function(add, name="plus", params=["x", "y"])
    assert desc.name == "plus"
    assert desc.param_names == ["x", "y"]
    with pytest.raises(RegistrationError):
        CallableDescriptor.from_function(add, params=["x"])


def test_variadic_functions_are_rejected():
    def spread(*values: int) -> int:
        return sum(values)

    with pytest.raises(RegistrationError):
        CallableDescriptor.from_function(spread)


def test_emit_is_injected_not_published():
    def work(n: int, *, emit) -> int:
        return n

    desc = CallableDescriptor.from_function(work)
    assert desc.accepts_emit
    assert desc.param_names == ["n"]


def test_check_rejects_unmarshallable_types():
    def bad(data: bytes) -> int:
        return 0

    desc = CallableDescriptor.from_function(bad)
    with pytest.raises(RegistrationError):
        desc.check(TypeConverterRegistry(ClassRegistry()))


def test_function_registry_rejects_duplicates():
    reg = FunctionRegistry()
    reg.register_function(CallableDescriptor.from_function(add), "m")
    with pytest.raises(RegistrationError):
        reg.register_function(CallableDescriptor.from_function(add), "other")
    assert reg.lookup_native(add) == "add"
    assert reg.unregister_module("m") == ["add"]
    assert "add" not in reg


@bridge_class(fields={"size": int})
class Widget:
    def __init__(self):
        self.size = 1
        self._label = ""

    @bridge_getter("label")
    def get_label(self) -> str:
        return self._label

    @bridge_setter("label")
    def set_label(self, value: str) -> None:
        self._label = value

    @bridge_method(name="grow_by", params=["amount"])
    def grow(self, n: int) -> int:
        self.size += n
        return self.size

    @bridge_method
    def same(self) -> Shared["Widget"]:
        return self


def test_class_descriptor_collects_members():
    desc = ClassDescriptor.from_class(Widget)
    assert desc.name == "Widget"
    assert set(desc.methods) == {"grow_by", "same"}
    assert desc.method("grow_by").param_names == ["amount"]
    assert desc.property_names() == ["label", "size"]
    assert desc.getter("size").return_hint is int
    assert desc.method("grow_by").params[0].hint == Shared[Widget]


def test_unmarked_subclass_is_not_registrable():
    class Sub(Widget):
        pass

    with pytest.raises(RegistrationError):
        ClassDescriptor.from_class(Sub)


def test_getter_setter_type_disagreement():
    @bridge_class()
    class Broken:
        @bridge_getter("v")
        def get_v(self) -> int:
            return 0

        @bridge_setter("v")
        def set_v(self, value: str) -> None:
            pass

    with pytest.raises(RegistrationError):
        ClassDescriptor.from_class(Broken)


def test_method_and_property_name_clash():
    @bridge_class(fields={"v": int})
    class Clash:
        @bridge_method(name="v")
        def v_method(self) -> int:
            return 0

    with pytest.raises(RegistrationError):
        ClassDescriptor.from_class(Clash)


def test_class_registry_finds_subclass_instances():
    reg = ClassRegistry()
    reg.register_class(ClassDescriptor.from_class(Widget), "m")

    class Special(Widget):
        pass

    assert reg.class_for_instance(Special()).name == "Widget"
    with pytest.raises(RegistrationError):
        reg.register_class(ClassDescriptor.from_class(Widget))


def test_copy_defaults_to_deepcopy():
    desc = ClassDescriptor.from_class(Widget)
    w = Widget()
    w.size = 5
    c = desc.copy(w)
    assert c is not w and c.size == 5


def test_module_registration_runs_each_step_once():
    reg = ModuleRegistration("m")
    reg.functions(add, export(add, name="plus"))
    assert [d.name for d in reg.function_table()] == ["add", "plus"]
    with pytest.raises(RegistrationError):
        reg.functions(add)
    reg.classes(Widget)
    with pytest.raises(RegistrationError):
        reg.classes(Widget)


def test_module_registration_rejects_duplicate_names():
    with pytest.raises(RegistrationError):
        ModuleRegistration("m").functions(add, export(add))


def test_container_hints_pass_check():
    def summarize(rows: List[Dict[str, int]]) -> Dict[str, int]:
        return {}

    CallableDescriptor.from_function(summarize).check(TypeConverterRegistry(ClassRegistry()))


@pytest.mark.parametrize("reserved", ["copy", "release", "handle"])
def test_proxy_member_names_are_reserved(reserved):
    @bridge_class()
    class Reserved:
        @bridge_method(name=reserved)
        def member(self) -> int:
            return 0

    with pytest.raises(RegistrationError) as err:
        ClassDescriptor.from_class(Reserved)
    assert "reserved" in str(err.value)


def test_reserved_property_name_is_rejected():
    @bridge_class(fields={"class_name": str})
    class Named:
        pass

    with pytest.raises(RegistrationError):
        ClassDescriptor.from_class(Named)
