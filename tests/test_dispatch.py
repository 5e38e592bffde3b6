import threading
import time
import types
from pathlib import Path

import pytest

from xbridge.xbridge_datatypes import Variant, VariantType, UNDEFINED
from xbridge.xbridge_dispatch import Dispatcher, ListSink
from xbridge.xbridge_errors import (
    ArityError, NativeException, ObjectHandleError, TypeConversionError, UnknownNameError,
)
from xbridge.xbridge_registry import CLASS_ACCESSOR, FUNCTION_ACCESSOR, ModuleRegistration
from xbridge.xbridge_runtime import Bridge

TOOLKIT = Path(__file__).parent / "toolkits" / "example_toolkit.py"


def make_dispatcher(sink=None) -> Dispatcher:
    bridge = Bridge(sink=sink)
    bridge.load_module(str(TOOLKIT))
    return bridge.dispatcher


def assert_ok(res, expected=None):
    assert res.status == "success", f"expected success, got {res.format_error()}"
    if expected is not None:
        assert res.value == expected, f"expected {expected!r}, got {res.value!r}"


def assert_error(res, kind):
    assert res.status == "error", f"expected {kind}, got success {res.value!r}"
    assert isinstance(res.error, kind), f"expected {kind.__name__}, got {res.format_error()}"


def test_add_integers():
    d = make_dispatcher()
    assert_ok(d.invoke("add_integers", [5, 10]), Variant(VariantType.INTEGER, 15))


def test_variant_arguments_are_accepted():
    d = make_dispatcher()
    assert_ok(d.invoke("add_integers", [Variant.integer(1), Variant.real(2.0)]), Variant.integer(3))


@pytest.mark.parametrize("args", [[1], [1, 2, 3]])
def test_wrong_argument_count(args):
    d = make_dispatcher()
    assert_error(d.invoke("add_integers", args), ArityError)


def test_named_equals_positional():
    d = make_dispatcher()
    positional = d.invoke("add_integers", [5, 10])
    named = d.invoke("add_integers", [], {"b": 10, "a": 5})
    mixed = d.invoke("add_integers", [5], {"b": 10})
    assert positional.value == named.value == mixed.value == Variant.integer(15)


def test_named_argument_errors():
    d = make_dispatcher()
    assert_error(d.invoke("add_integers", [], {"a": 1, "c": 2}), UnknownNameError)
    assert_error(d.invoke("add_integers", [1], {"a": 1, "b": 2}), ArityError)
    assert_error(d.invoke("add_integers", [], {"a": 1}), ArityError)


def test_defaults_fill_named_calls():
    d = make_dispatcher()
    assert_ok(d.invoke("greet", [], {"name": "Ada"}), Variant.string("Hello, Ada"))
    assert_ok(d.invoke("greet", ["Ada", "Hi"]), Variant.string("Hi, Ada"))


def test_renamed_export():
    d = make_dispatcher()
    assert_ok(d.invoke("plus", [], {"left": 2, "right": 3}), Variant.integer(5))


def test_native_exception_keeps_message():
    d = make_dispatcher()
    res = d.invoke("divide_integers", [10, 0])
    assert_error(res, NativeException)
    assert res.error_message == "Divide by zero Error"
    assert res.format_error() == "NativeException: Divide by zero Error"
    assert res.side_effects[-1] == {"topics": ["stderr"], "message": "NativeException: Divide by zero Error"}


def test_unknown_function():
    d = make_dispatcher()
    res = d.invoke("nope", [])
    assert_error(res, UnknownNameError)
    with pytest.raises(UnknownNameError):
        res.unwrap()


def test_conversion_error_names_parameter_and_key():
    d = make_dispatcher()
    res = d.invoke("join_values", [{"a": "b", "c": 1}])
    assert_error(res, TypeConversionError)
    assert res.error.param == "values"
    assert res.error.position == 0
    assert res.error.key == "c"


def test_dict_of_variants_preserves_values():
    d = make_dispatcher()
    res = d.invoke("echo_values", [{"a": "b", "c": 1}])
    assert_ok(res)
    assert res.value["c"] == Variant.integer(1)
    assert res.value["a"] == Variant.string("b")


def test_progress_is_recorded_and_forwarded():
    sink = ListSink()
    d = make_dispatcher(sink)
    res = d.invoke("count_to", [3])
    assert_ok(res, Variant.integer(3))
    assert [e["message"] for e in res.side_effects] == ["step 1", "step 2", "step 3"]
    assert all(e["topics"] == ["progress"] for e in res.side_effects)
    assert sink.messages == ["step 1", "step 2", "step 3"]


def test_optional_return_none_is_undefined():
    d = make_dispatcher()
    assert_ok(d.invoke("first_or_none", [[]]))
    assert d.invoke("first_or_none", [[]]).value is UNDEFINED


def test_property_set_then_get():
    d = make_dispatcher()
    handle = d.create_object("Shape").unwrap()
    assert_ok(d.invoke_property_set(handle, "two", "x"), UNDEFINED)
    assert_ok(d.invoke_property_get(handle, "two"), Variant.string("x"))


def test_field_properties_and_methods():
    d = make_dispatcher()
    handle = d.create_object("Shape").unwrap()
    assert_ok(d.invoke_property_set(handle, "one", 4))
    assert_ok(d.invoke_method(handle, "area", [3]), Variant.integer(12))
    assert_error(d.invoke_method(handle, "volume", []), UnknownNameError)
    assert_error(d.invoke_property_get(handle, "three"), UnknownNameError)


def test_property_set_type_mismatch():
    d = make_dispatcher()
    handle = d.create_object("Shape").unwrap()
    assert_error(d.invoke_property_set(handle, "two", 5), TypeConversionError)


def test_shared_return_aliases_instance():
    d = make_dispatcher()
    handle = d.create_object("Shape").unwrap()
    grown = d.invoke_method(handle, "grow", [2]).unwrap()
    assert grown.value.same_object(handle.value)
    cloned = d.invoke_method(handle, "clone", []).unwrap()
    assert not cloned.value.same_object(handle.value)
    assert cloned.value.instance.one == 2


def test_copy_object_is_independent():
    d = make_dispatcher()
    handle = d.create_object("Shape").unwrap()
    d.invoke_property_set(handle, "one", 1)
    copy = d.copy_object(handle).unwrap()
    d.invoke_property_set(copy, "one", 9)
    assert d.invoke_property_get(handle, "one").value == Variant.integer(1)
    assert d.invoke_property_get(copy, "one").value == Variant.integer(9)


def test_by_value_parameter_does_not_mutate_original():
    d = make_dispatcher()
    shape = d.invoke("make_shape", [1]).unwrap()
    assert_ok(d.invoke("bump", [shape]), Variant.integer(2))
    assert shape.value.instance.one == 1
    assert_ok(d.invoke("bump_shared", [shape]), Variant.integer(2))
    assert shape.value.instance.one == 2


def test_released_handle_is_an_error():
    d = make_dispatcher()
    handle = d.create_object("Shape").unwrap()
    handle.value.release()
    assert_error(d.invoke_property_get(handle, "two"), ObjectHandleError)


def test_unknown_class():
    d = make_dispatcher()
    assert_error(d.create_object("Circle"), UnknownNameError)


@pytest.mark.parametrize("value", [float("inf"), float("nan")])
def test_non_finite_argument_is_a_conversion_error(value):
    d = make_dispatcher()
    res = d.invoke("add_integers", [value, 1])
    assert_error(res, TypeConversionError)
    assert res.error.param == "a"
    assert res.error.position == 0


def slow_module(active, peak, guard):
    def slow_step(x: int) -> int:
        with guard:
            active[0] += 1
            peak[0] = max(peak[0], active[0])
        time.sleep(0.01)
        with guard:
            active[0] -= 1
        return x

    reg = ModuleRegistration("slow_mod").functions(slow_step).classes()
    module = types.ModuleType("slow_mod")
    setattr(module, FUNCTION_ACCESSOR, reg.function_table)
    setattr(module, CLASS_ACCESSOR, reg.class_table)
    return module


def test_dispatches_from_many_threads_run_one_at_a_time():
    active, peak, guard = [0], [0], threading.Lock()
    bridge = Bridge()
    bridge.load_module(slow_module(active, peak, guard))
    results = []

    def worker(i):
        results.append(bridge.call("slow_step", i))

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)
    assert not any(t.is_alive() for t in threads)
    assert sorted(results) == list(range(8))
    assert peak[0] == 1


def test_native_code_can_call_back_on_the_same_thread():
    bridge = Bridge()
    bridge.load_module(str(TOOLKIT))
    add = bridge.functions.add_integers
    fn = lambda x: add(x, 3)
    results = []

    def worker():
        results.append(bridge.call("apply_twice", fn, 1))

    t = threading.Thread(target=worker)
    t.start()
    t.join(timeout=10)
    assert not t.is_alive()
    assert results == [7]
