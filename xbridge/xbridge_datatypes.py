"""
Defines the value types that cross the host/native boundary.

A `Variant` is the tagged, recursively composable value every call is
marshaled through. It is self-describing: the tag alone says how to read the
payload, so no schema travels with it. `Image` is the opaque blob payload and
`ClosureInfo` the persistable reference-to-a-registered-function payload.
"""

import enum
import datetime as _dt
import collections.abc as collections_abc
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, TYPE_CHECKING

from xbridge.xbridge_errors import ArityError

if TYPE_CHECKING:
    from xbridge.xbridge_handles import ObjectHandle


class VariantType(enum.Enum):
    INTEGER = "integer"
    FLOAT = "float"
    STRING = "string"
    DATETIME = "datetime"
    IMAGE = "image"
    LIST = "list"
    DICT = "dict"
    OBJECT = "object"
    CLOSURE = "closure"
    UNDEFINED = "undefined"

    def __repr__(self) -> str:
        return f"VariantType.{self.name}"


# =================================================================
# Opaque payloads
# =================================================================

class Image:
    """An opaque image blob with the metadata needed to interpret it."""

    FORMATS = ("raw", "png", "jpeg", "undefined")

    def __init__(self, width: int, height: int, channels: int, data: bytes = b"",
                 format: str = "raw", version: int = 0):
        if format not in self.FORMATS:
            raise ValueError(f"Unknown image format {format!r}; expected one of {self.FORMATS}")
        if width < 0 or height < 0 or channels < 0:
            raise ValueError("Image dimensions must be non-negative")
        self.width = int(width)
        self.height = int(height)
        self.channels = int(channels)
        self.data = bytes(data)
        self.format = format
        self.version = int(version)

    @property
    def size(self) -> int:
        return len(self.data)

    def __eq__(self, other):
        if not isinstance(other, Image):
            return NotImplemented
        return (
            self.width == other.width and
            self.height == other.height and
            self.channels == other.channels and
            self.format == other.format and
            self.version == other.version and
            self.data == other.data
        )

    def __hash__(self):
        return hash((self.width, self.height, self.channels, self.format, self.version, self.data))

    def __repr__(self) -> str:
        return f"<Image {self.width}x{self.height}x{self.channels} {self.format} {len(self.data)} bytes>"


class ClosureArg:
    """One bound slot of a ClosureInfo: a pass-through parameter or a literal."""

    PARAM = "param"
    LITERAL = "literal"

    def __init__(self, kind: str, index: Optional[int] = None, value: Optional['Variant'] = None):
        if kind == self.PARAM:
            if index is None or index < 0:
                raise ValueError("A pass-through slot needs a non-negative parameter index")
        elif kind == self.LITERAL:
            if not isinstance(value, Variant):
                raise ValueError("A literal slot must hold a Variant")
        else:
            raise ValueError(f"Unknown closure slot kind {kind!r}")
        self.kind = kind
        self.index = index
        self.value = value

    @classmethod
    def param(cls, index: int) -> 'ClosureArg':
        return cls(cls.PARAM, index=index)

    @classmethod
    def literal(cls, value: 'Variant') -> 'ClosureArg':
        return cls(cls.LITERAL, value=value)

    @property
    def is_param(self) -> bool:
        return self.kind == self.PARAM

    def __eq__(self, other):
        if not isinstance(other, ClosureArg):
            return NotImplemented
        return self.kind == other.kind and self.index == other.index and self.value == other.value

    def __hash__(self):
        return hash((self.kind, self.index, self.value))

    def __repr__(self) -> str:
        if self.is_param:
            return f"ClosureArg.param({self.index})"
        return f"ClosureArg.literal({self.value!r})"


class ClosureInfo:
    """A persistable reference to a registered function plus its bound arguments.

    It never holds code: `function` is a registry key and every bound slot is
    either "pass host parameter i through" or a literal Variant (possibly a
    nested closure). The key is resolved again every time the closure runs.
    """

    def __init__(self, function: str, arguments: Sequence[ClosureArg], num_params: int):
        if not isinstance(function, str) or not function:
            raise ValueError("ClosureInfo needs a non-empty function key")
        self.function = function
        self.arguments: Tuple[ClosureArg, ...] = tuple(arguments)
        self.num_params = int(num_params)
        for slot in self.arguments:
            if slot.is_param and slot.index >= self.num_params:
                raise ValueError(
                    f"Slot refers to parameter {slot.index} but the closure takes {self.num_params}"
                )

    def bind(self, args: Sequence['Variant']) -> List['Variant']:
        """Builds the argument list for the referenced function."""
        if len(args) != self.num_params:
            raise ArityError(
                f"closure over {self.function!r} takes {self.num_params} argument(s), got {len(args)}"
            )
        out: List[Variant] = []
        for slot in self.arguments:
            if slot.is_param:
                out.append(args[slot.index])
            else:
                out.append(slot.value)
        return out

    def function_keys(self) -> List[str]:
        """Every registry key this closure depends on, nested closures included."""
        keys = [self.function]
        for slot in self.arguments:
            if not slot.is_param:
                keys.extend(_closure_keys_in(slot.value))
        return keys

    def __eq__(self, other):
        if not isinstance(other, ClosureInfo):
            return NotImplemented
        return (
            self.function == other.function and
            self.arguments == other.arguments and
            self.num_params == other.num_params
        )

    def __hash__(self):
        return hash((self.function, self.arguments, self.num_params))

    def __repr__(self) -> str:
        from xbridge.xbridge_printer import Printer
        return Printer().pformat(self)


def _closure_keys_in(value: 'Variant') -> List[str]:
    if value.type is VariantType.CLOSURE:
        return value.value.function_keys()
    if value.type is VariantType.LIST:
        out = []
        for item in value.value:
            out.extend(_closure_keys_in(item))
        return out
    if value.type is VariantType.DICT:
        out = []
        for k, v in value.value:
            out.extend(_closure_keys_in(k))
            out.extend(_closure_keys_in(v))
        return out
    return []


# =================================================================
# The tagged value
# =================================================================

class Variant:
    """An immutable tagged value.

    Containers are stored as tuples: LIST as a tuple of Variants, DICT as a
    tuple of (key, value) Variant pairs with unique keys. DICT equality ignores
    pair order. Build variants from host values with `to_variant`.
    """

    __slots__ = ("_type", "_value", "_hash")

    def __init__(self, vtype: VariantType, value: Any = None):
        object.__setattr__(self, "_type", vtype)
        object.__setattr__(self, "_value", _check_payload(vtype, value))
        object.__setattr__(self, "_hash", None)

    def __setattr__(self, key, value):
        raise AttributeError("Variant is immutable")

    def __delattr__(self, key):
        raise AttributeError("Variant is immutable")

    @property
    def type(self) -> VariantType:
        return self._type

    @property
    def value(self) -> Any:
        return self._value

    @property
    def is_undefined(self) -> bool:
        return self._type is VariantType.UNDEFINED

    @property
    def is_numeric(self) -> bool:
        return self._type in (VariantType.INTEGER, VariantType.FLOAT)

    # --- constructors ---
    @classmethod
    def integer(cls, v: int) -> 'Variant':
        return cls(VariantType.INTEGER, v)

    @classmethod
    def real(cls, v: float) -> 'Variant':
        return cls(VariantType.FLOAT, v)

    @classmethod
    def string(cls, v: str) -> 'Variant':
        return cls(VariantType.STRING, v)

    @classmethod
    def sequence(cls, items: Iterable['Variant']) -> 'Variant':
        return cls(VariantType.LIST, tuple(items))

    @classmethod
    def mapping(cls, pairs: Any) -> 'Variant':
        if isinstance(pairs, collections_abc.Mapping):
            pairs = pairs.items()
        return cls(VariantType.DICT, tuple(pairs))

    # --- access ---
    def __len__(self) -> int:
        if self._type in (VariantType.LIST, VariantType.DICT):
            return len(self._value)
        raise TypeError(f"{self._type.value} variant has no length")

    def __iter__(self):
        if self._type is VariantType.LIST:
            return iter(self._value)
        if self._type is VariantType.DICT:
            return (k for k, _ in self._value)
        raise TypeError(f"{self._type.value} variant is not iterable")

    def __getitem__(self, key):
        if self._type is VariantType.LIST:
            return self._value[key]
        if self._type is VariantType.DICT:
            if not isinstance(key, Variant):
                from xbridge.xbridge_convert import to_variant
                key = to_variant(key)
            for k, v in self._value:
                if k == key:
                    return v
            raise KeyError(key)
        raise TypeError(f"{self._type.value} variant is not subscriptable")

    def items(self) -> List[Tuple['Variant', 'Variant']]:
        if self._type is not VariantType.DICT:
            raise TypeError(f"{self._type.value} variant has no items")
        return list(self._value)

    def to_host(self) -> Any:
        """Returns the natural Python value for this variant."""
        t = self._type
        if t is VariantType.LIST:
            return [item.to_host() for item in self._value]
        if t is VariantType.DICT:
            return {_hashable(k.to_host()): v.to_host() for k, v in self._value}
        if t is VariantType.UNDEFINED:
            return None
        return self._value

    def __eq__(self, other):
        if not isinstance(other, Variant):
            return NotImplemented
        if self._type is not other._type:
            return False
        if self._type is VariantType.DICT:
            return dict(self._value) == dict(other._value)
        return self._value == other._value

    def __hash__(self):
        h = self._hash
        if h is None:
            if self._type is VariantType.DICT:
                h = hash((self._type, frozenset(self._value)))
            else:
                h = hash((self._type, self._value))
            object.__setattr__(self, "_hash", h)
        return h

    def __bool__(self) -> bool:
        return not self.is_undefined

    def __repr__(self) -> str:
        from xbridge.xbridge_printer import Printer
        return f"Variant<{self._type.value}>({Printer().pformat(self)})"


def _hashable(value: Any) -> Any:
    if isinstance(value, list):
        return tuple(_hashable(v) for v in value)
    if isinstance(value, dict):
        return tuple((k, _hashable(v)) for k, v in value.items())
    return value


def _check_payload(vtype: VariantType, value: Any) -> Any:
    """Validates the payload shape for a tag and normalizes containers to tuples."""
    match vtype:
        case VariantType.INTEGER:
            if isinstance(value, bool):
                return int(value)
            if not isinstance(value, int):
                raise TypeError(f"INTEGER variant needs an int, got {type(value).__name__}")
            return value
        case VariantType.FLOAT:
            if not isinstance(value, (int, float)) or isinstance(value, bool):
                raise TypeError(f"FLOAT variant needs a float, got {type(value).__name__}")
            return float(value)
        case VariantType.STRING:
            if not isinstance(value, str):
                raise TypeError(f"STRING variant needs a str, got {type(value).__name__}")
            return value
        case VariantType.DATETIME:
            if not isinstance(value, _dt.datetime):
                raise TypeError(f"DATETIME variant needs a datetime, got {type(value).__name__}")
            return value
        case VariantType.IMAGE:
            if not isinstance(value, Image):
                raise TypeError(f"IMAGE variant needs an Image, got {type(value).__name__}")
            return value
        case VariantType.LIST:
            items = tuple(value)
            for item in items:
                if not isinstance(item, Variant):
                    raise TypeError("LIST variant elements must be Variants")
            return items
        case VariantType.DICT:
            pairs = tuple(tuple(p) for p in value)
            seen = set()
            for pair in pairs:
                if len(pair) != 2 or not all(isinstance(x, Variant) for x in pair):
                    raise TypeError("DICT variant entries must be (Variant, Variant) pairs")
                if pair[0] in seen:
                    raise ValueError(f"Duplicate DICT variant key {pair[0]!r}")
                seen.add(pair[0])
            return pairs
        case VariantType.OBJECT:
            from xbridge.xbridge_handles import ObjectHandle
            if not isinstance(value, ObjectHandle):
                raise TypeError(f"OBJECT variant needs an ObjectHandle, got {type(value).__name__}")
            return value
        case VariantType.CLOSURE:
            if not isinstance(value, ClosureInfo):
                raise TypeError(f"CLOSURE variant needs a ClosureInfo, got {type(value).__name__}")
            return value
        case VariantType.UNDEFINED:
            return None
    raise TypeError(f"Unknown variant type {vtype!r}")


UNDEFINED = Variant(VariantType.UNDEFINED)
