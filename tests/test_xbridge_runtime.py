from pathlib import Path

import pytest

from xbridge.__main__ import run
from xbridge.xbridge_dispatch import ListSink
from xbridge.xbridge_errors import (
    ArityError, NativeException, ObjectHandleError, TypeConversionError, UnknownNameError,
)
from xbridge.xbridge_runtime import Bridge, HostObject

TOOLKIT = Path(__file__).parent / "toolkits" / "example_toolkit.py"


def make_bridge(**kwargs) -> Bridge:
    bridge = Bridge(**kwargs)
    bridge.load_module(str(TOOLKIT))
    return bridge


def test_functions_namespace():
    bridge = make_bridge()
    assert bridge.functions.add_integers(5, 10) == 15
    assert bridge.functions.add_integers(a=5, b=10) == 15
    assert bridge.functions["scale"]([1.0, 2.0], factor=3.0) == [3.0, 6.0]
    with pytest.raises(AttributeError):
        bridge.functions.missing
    assert "add_integers" in dir(bridge.functions)


def test_call_raises_bridge_errors():
    bridge = make_bridge()
    with pytest.raises(NativeException) as err:
        bridge.call("divide_integers", 10, 0)
    assert str(err.value) == "Divide by zero Error"
    with pytest.raises(ArityError):
        bridge.call("add_integers", 1)
    with pytest.raises(TypeConversionError):
        bridge.call("join_values", {"a": "b", "c": 1})
    with pytest.raises(UnknownNameError):
        bridge.call("nope")


def test_invoke_returns_result():
    bridge = make_bridge()
    res = bridge.invoke("divide_integers", 10, 2)
    assert res.ok
    assert res.value.value == 5


def test_host_object_properties_and_methods():
    bridge = make_bridge()
    shape = bridge.new("Shape")
    shape.two = "x"
    assert shape.two == "x"
    shape.one = 2
    assert shape.area(5) == 10
    assert shape.class_name == "Shape"
    with pytest.raises(AttributeError):
        shape.volume
    with pytest.raises(AttributeError):
        shape.area = 3
    with pytest.raises(TypeConversionError):
        shape.two = 3


def test_alias_shares_and_copy_separates():
    bridge = make_bridge()
    shape = bridge.new("Shape")
    shape.one = 1
    alias = shape.alias()
    copy = shape.copy()
    alias.one = 5
    copy.one = 9
    assert shape.one == 5
    assert copy.one == 9
    assert alias == shape
    assert copy != shape


def test_release_invalidates_last_holder():
    bridge = make_bridge()
    shape = bridge.new("Shape")
    alias = shape.alias()
    shape.release()
    alias.two = "still here"
    alias.release()
    with pytest.raises(ObjectHandleError):
        alias.two


def test_objects_returned_from_functions_are_proxies():
    bridge = make_bridge()
    shape = bridge.call("make_shape", 4)
    assert isinstance(shape, HostObject)
    assert shape.one == 4
    grown = shape.grow(1)
    assert grown == shape and shape.one == 5
    assert bridge.call("bump", shape) == 6
    assert shape.one == 5
    assert bridge.call("bump_shared", shape) == 6
    assert shape.one == 6


def test_method_taking_a_closure():
    bridge = make_bridge()
    add = bridge.functions.add_integers
    shape = bridge.call("make_shape", 2)
    assert shape.transform(lambda v: add(v, 40)) == 42


def test_progress_reaches_sink():
    sink = ListSink()
    bridge = make_bridge(sink=sink)
    assert bridge.call("count_to", 2) == 2
    assert sink.messages == ["step 1", "step 2"]


def test_dump_and_restore_closure():
    bridge = make_bridge()
    add = bridge.functions.add_integers
    text = bridge.dump_closure(lambda x: add(x, 1))
    restored = bridge.restore_closure(text)
    assert bridge.call_closure(restored, 41) == 42


def test_describe_unknown_name():
    bridge = make_bridge()
    with pytest.raises(UnknownNameError):
        bridge.describe("nothing")


def test_cli_prints_result(capsys):
    assert run([str(TOOLKIT), "add_integers", "5", "10"]) == 0
    assert capsys.readouterr().out.strip() == "15"


def test_cli_parses_structured_arguments(capsys):
    assert run([str(TOOLKIT), "join_values", "{a: b, c: d}"]) == 0
    assert capsys.readouterr().out.strip() == '"a=b,c=d"'


def test_cli_prints_progress(capsys):
    assert run([str(TOOLKIT), "count_to", "2"]) == 0
    assert capsys.readouterr().out.splitlines() == ["step 1", "step 2", "2"]


def test_cli_reports_errors(capsys):
    assert run([str(TOOLKIT), "divide_integers", "1", "0"]) == 1
    assert "NativeException: Divide by zero Error" in capsys.readouterr().err


def test_cli_describe(capsys):
    assert run([str(TOOLKIT), "--describe", "add_integers"]) == 0
    assert capsys.readouterr().out.startswith("add_integers(a: int, b: int) -> int")


def test_cli_usage(capsys):
    assert run([]) == 2
    assert "usage" in capsys.readouterr().err
