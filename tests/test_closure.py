from pathlib import Path

import pytest

from xbridge.xbridge_closure import capture, check_closure
from xbridge.xbridge_datatypes import ClosureArg, ClosureInfo, Variant, VariantType
from xbridge.xbridge_errors import ClosureValidationError, SerializationError, UnknownNameError
from xbridge.xbridge_runtime import Bridge

TOOLKIT = Path(__file__).parent / "toolkits" / "example_toolkit.py"

OFFSET = 7


def make_bridge() -> Bridge:
    bridge = Bridge()
    bridge.load_module(str(TOOLKIT))
    return bridge


def test_param_and_literal_are_accepted():
    bridge = make_bridge()
    add = bridge.functions.add_integers
    fn = lambda x: add(x, 5)
    info = bridge.capture(fn)
    assert info == ClosureInfo("add_integers", [ClosureArg.param(0), ClosureArg.literal(Variant.integer(5))], 1)
    assert bridge.call_closure(info, 10) == 15


def test_param_inside_an_operation_is_rejected():
    bridge = make_bridge()
    add = bridge.functions.add_integers
    fn = lambda x: add(x + 1, 5)
    with pytest.raises(ClosureValidationError) as err:
        bridge.capture(fn)
    assert "combines a parameter" in str(err.value)


def test_literals_are_evaluated_at_capture_time():
    bridge = make_bridge()
    add = bridge.functions.add_integers
    base = 3
    fn = lambda x: add(base * 2, x)
    info = bridge.capture(fn)
    base = 100
    assert info.arguments[0] == ClosureArg.literal(Variant.integer(6))
    assert bridge.call_closure(info, 1) == 7


def test_module_globals_are_in_scope():
    bridge = make_bridge()
    add = bridge.functions.add_integers
    info = bridge.capture(lambda y: add(OFFSET, y))
    assert bridge.call_closure(info, 1) == 8


def test_keyword_arguments_map_onto_parameters():
    bridge = make_bridge()
    greet = bridge.functions.greet
    fn = lambda who: greet(greeting="Hey", name=who)
    info = bridge.capture(fn)
    assert info.arguments[0] == ClosureArg.param(0)
    assert bridge.call_closure(info, "Bo") == "Hey, Bo"


def test_def_with_single_return_call():
    bridge = make_bridge()
    add = bridge.functions.add_integers

    def add_ten(x):
        """Adds ten."""
        return add(x, 10)

    assert bridge.call_closure(bridge.capture(add_ten), 1) == 11


def test_def_with_extra_statements_is_rejected():
    bridge = make_bridge()
    add = bridge.functions.add_integers

    def twice(x):
        y = x
        return add(y, y)

    with pytest.raises(ClosureValidationError):
        bridge.capture(twice)


def test_registered_function_passes_through():
    bridge = make_bridge()
    info = bridge.capture(bridge.functions.add_integers)
    assert info.num_params == 2
    assert all(slot.is_param for slot in info.arguments)


def test_rejected_shapes():
    bridge = make_bridge()
    add = bridge.functions.add_integers
    nested = lambda x: add(add(x, 1), 2)
    sub_expression = lambda x: add(x, 1) + 1
    starred = lambda *xs: add(*xs)
    defaulted = lambda x=1: add(x, 1)
    unregistered = lambda x: len([x])
    for fn in (nested, sub_expression, starred, defaulted, unregistered):
        with pytest.raises(ClosureValidationError):
            bridge.capture(fn)


def test_two_lambdas_on_one_line_are_ambiguous():
    bridge = make_bridge()
    add = bridge.functions.add_integers
    fs = [lambda x: add(x, 1), lambda y: add(y, 2)]
    with pytest.raises(ClosureValidationError):
        bridge.capture(fs[0])


def test_wrong_arity_is_rejected():
    bridge = make_bridge()
    add = bridge.functions.add_integers
    fn = lambda x: add(x)
    with pytest.raises(ClosureValidationError):
        bridge.capture(fn)


def test_unload_then_reload():
    bridge = make_bridge()
    add = bridge.functions.add_integers
    fn = lambda x: add(x, 5)
    info = bridge.capture(fn)
    name = bridge.loaded_modules()[0]

    bridge.unload_module(name)
    with pytest.raises(UnknownNameError):
        bridge.call_closure(info, 1)

    bridge.load_module(str(TOOLKIT))
    assert bridge.call_closure(info, 1) == 6


def test_closure_passed_to_native_code():
    bridge = make_bridge()
    add = bridge.functions.add_integers
    assert bridge.call("apply_twice", lambda x: add(x, 3), 1) == 7


def test_nested_closure_literal():
    bridge = make_bridge()
    add = bridge.functions.add_integers
    apply_twice = bridge.functions.apply_twice
    inner = bridge.capture(lambda x: add(x, 2))
    info = bridge.capture(lambda n: apply_twice(inner, n))
    assert info.arguments[0].value.type is VariantType.CLOSURE
    assert info.function_keys() == ["apply_twice", "add_integers"]
    assert bridge.call_closure(info, 0) == 4


def test_capture_with_plain_registries():
    bridge = make_bridge()
    native = bridge.functions_registry.lookup_function("add_integers").entry
    info = capture(native, bridge.functions_registry, bridge.converters)
    assert info.function == "add_integers"


def test_check_closure_reports_missing_keys():
    bridge = make_bridge()
    info = ClosureInfo("missing", [], 0)
    with pytest.raises(SerializationError):
        check_closure(info, bridge.functions_registry)


def test_literal_expressions_are_computed_from_scope():
    bridge = make_bridge()
    greet = bridge.functions.greet
    names = ["Ada", "Grace"]
    loud = True
    info = bridge.capture(lambda who: greet(who, f"{names[-1][:2]}!" if loud and names else "Hi"))
    assert info.arguments[1] == ClosureArg.literal(Variant.string("Gr!"))
    assert bridge.call_closure(info, "Ada") == "Gr!, Ada"


def test_undefined_name_in_literal_is_rejected():
    bridge = make_bridge()
    add = bridge.functions.add_integers
    fn = lambda x: add(x, not_defined_anywhere)  # noqa: F821
    with pytest.raises(ClosureValidationError) as err:
        bridge.capture(fn)
    assert "not defined" in str(err.value)
