"""A small native module used by the end-to-end tests."""
from typing import Callable, Dict, List, Optional

from xbridge.xbridge_convert import Shared
from xbridge.xbridge_datatypes import Variant
from xbridge.xbridge_registry import (
    ModuleRegistration, bridge_class, bridge_getter, bridge_method, bridge_setter, export,
)


RELEASED = []


@bridge_class(fields={"one": int})
class Shape:
    """A shape with one plain field and one accessor-backed property."""

    def __init__(self):
        self.one = 0
        self._two = ""

    @bridge_getter("two")
    def get_two(self) -> str:
        return self._two

    @bridge_setter("two")
    def set_two(self, value: str) -> None:
        self._two = value

    @bridge_method
    def area(self, scale: int) -> int:
        return self.one * scale

    @bridge_method
    def transform(self, fn: Callable) -> int:
        """Runs a host closure on the `one` field."""
        return fn(self.one)

    @bridge_method
    def grow(self, by: int) -> Shared["Shape"]:
        self.one += by
        return self

    @bridge_method
    def clone(self) -> "Shape":
        return self

    def __bridge_release__(self):
        RELEASED.append(self._two)


def add_integers(a: int, b: int) -> int:
    return a + b


def divide_integers(a: int, b: int) -> int:
    if b == 0:
        raise RuntimeError("Divide by zero Error")
    return a // b


def join_values(values: Dict[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in sorted(values.items()))


def echo_values(values: Dict[str, Variant]) -> Dict[str, Variant]:
    return values


def scale(values: List[float], factor: float = 2.0) -> List[float]:
    return [v * factor for v in values]


def greet(name: str, greeting: str = "Hello") -> str:
    return f"{greeting}, {name}"


def first_or_none(values: List[str]) -> Optional[str]:
    return values[0] if values else None


def count_to(n: int, *, emit) -> int:
    for i in range(1, n + 1):
        emit(f"step {i}")
    return n


def apply_twice(fn: Callable, x: int) -> int:
    return fn(fn(x))


def make_shape(one: int) -> Shape:
    shape = Shape()
    shape.one = one
    return shape


def bump(shape: Shape) -> int:
    shape.one += 1
    return shape.one


def bump_shared(shape: Shared[Shape]) -> int:
    shape.one += 1
    return shape.one


_registration = ModuleRegistration(__name__)
_registration.classes(Shape)
_registration.functions(
    add_integers,
    divide_integers,
    join_values,
    echo_values,
    scale,
    export(greet, doc="Greets someone by name."),
    first_or_none,
    count_to,
    apply_twice,
    make_shape,
    bump,
    bump_shared,
    export(add_integers, name="plus", params=("left", "right")),
)


def get_toolkit_function_registration():
    return _registration.function_table()


def get_toolkit_class_registration():
    return _registration.class_table()
