from __future__ import annotations

import base64
import datetime as _dt
import json
import re
from typing import Any, Optional

import yaml

from xbridge.xbridge_datatypes import ClosureArg, ClosureInfo, Image, Variant, VariantType, UNDEFINED
from xbridge.xbridge_errors import SerializationError


# --------------------------
# Helpers
# --------------------------

def _norm_text(data: bytes | bytearray | str, *, encoding: Optional[str] = None) -> str:
    if isinstance(data, (bytes, bytearray)):
        enc = encoding or 'utf-8'
        try:
            return data.decode(enc)
        except (LookupError, UnicodeDecodeError):
            return data.decode('utf-8', errors='replace')
    if isinstance(data, str):
        return data
    return str(data)


def _encoding_from_content_type(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    m = re.search(r'charset\s*=\s*([^\s;]+)', content_type, re.IGNORECASE)
    if m:
        return m.group(1).strip('"').strip("'")
    return None


def detect_format(content_type: Optional[str] = None, data_hint: Optional[str] = None) -> Optional[str]:
    """
    Returns a canonical format name among: 'json', 'yaml'.
    Uses Content-Type first; falls back to simple data sniffing if provided.
    """
    ct = (content_type or "").lower()
    if 'json' in ct:
        return 'json'
    if 'yaml' in ct or 'x-yaml' in ct:
        return 'yaml'
    if data_hint is not None:
        s = data_hint.lstrip()
        if s.startswith('{') or s.startswith('['):
            return 'json'
        if s:
            # YAML is a superset of JSON; anything else structured is read as YAML
            return 'yaml'
    return None


# --------------------------
# Tagged builtin form
# --------------------------

def variant_to_builtin(value: Variant) -> Any:
    """A JSON/YAML-safe, self-describing rendering of a variant."""
    t = value.type
    match t:
        case VariantType.INTEGER | VariantType.FLOAT | VariantType.STRING:
            return {"type": t.value, "value": value.value}
        case VariantType.DATETIME:
            return {"type": t.value, "value": value.value.isoformat()}
        case VariantType.IMAGE:
            img = value.value
            return {
                "type": t.value,
                "width": img.width,
                "height": img.height,
                "channels": img.channels,
                "format": img.format,
                "version": img.version,
                "data": base64.b64encode(img.data).decode("ascii"),
            }
        case VariantType.LIST:
            return {"type": t.value, "value": [variant_to_builtin(v) for v in value.value]}
        case VariantType.DICT:
            return {"type": t.value,
                    "value": [[variant_to_builtin(k), variant_to_builtin(v)] for k, v in value.value]}
        case VariantType.CLOSURE:
            return {"type": t.value, "value": closure_to_builtin(value.value)}
        case VariantType.UNDEFINED:
            return {"type": t.value}
        case VariantType.OBJECT:
            raise SerializationError(
                f"object handles cannot be persisted ({value.value.class_name if value.value.is_valid else 'released'})"
            )
    raise SerializationError(f"unknown variant type {t!r}")


def variant_from_builtin(data: Any) -> Variant:
    if not isinstance(data, dict) or "type" not in data:
        raise SerializationError(f"not a tagged variant: {data!r}")
    try:
        t = VariantType(data["type"])
    except ValueError:
        raise SerializationError(f"unknown variant type {data['type']!r}")
    try:
        match t:
            case VariantType.INTEGER | VariantType.FLOAT | VariantType.STRING:
                return Variant(t, data["value"])
            case VariantType.DATETIME:
                return Variant(t, _dt.datetime.fromisoformat(data["value"]))
            case VariantType.IMAGE:
                return Variant(t, Image(
                    data["width"], data["height"], data["channels"],
                    base64.b64decode(data["data"]),
                    format=data.get("format", "raw"), version=data.get("version", 0),
                ))
            case VariantType.LIST:
                return Variant(t, [variant_from_builtin(v) for v in data["value"]])
            case VariantType.DICT:
                return Variant(t, [(variant_from_builtin(k), variant_from_builtin(v)) for k, v in data["value"]])
            case VariantType.CLOSURE:
                return Variant(t, closure_from_builtin(data["value"]))
            case VariantType.UNDEFINED:
                return UNDEFINED
            case VariantType.OBJECT:
                raise SerializationError("object handles cannot be restored from persisted data")
    except SerializationError:
        raise
    except (KeyError, TypeError, ValueError) as e:
        raise SerializationError(f"malformed {t.value} variant: {e}")
    raise SerializationError(f"unknown variant type {t!r}")


def closure_to_builtin(closure: ClosureInfo) -> dict:
    arguments = []
    for slot in closure.arguments:
        if slot.is_param:
            arguments.append({"param": slot.index})
        else:
            arguments.append({"literal": variant_to_builtin(slot.value)})
    return {"function": closure.function, "num_params": closure.num_params, "arguments": arguments}


def closure_from_builtin(data: Any) -> ClosureInfo:
    if not isinstance(data, dict) or "function" not in data:
        raise SerializationError(f"not a closure: {data!r}")
    slots = []
    try:
        for raw in data.get("arguments", []):
            if "param" in raw:
                slots.append(ClosureArg.param(int(raw["param"])))
            elif "literal" in raw:
                slots.append(ClosureArg.literal(variant_from_builtin(raw["literal"])))
            else:
                raise SerializationError(f"closure argument is neither a parameter nor a literal: {raw!r}")
        return ClosureInfo(data["function"], slots, int(data.get("num_params", 0)))
    except SerializationError:
        raise
    except (KeyError, TypeError, ValueError) as e:
        raise SerializationError(f"malformed closure: {e}")


# --------------------------
# Public API
# --------------------------

def deserialize(data: bytes | bytearray | str,
                *,
                content_type: Optional[str] = None,
                fmt: Optional[str] = None) -> Any:
    """
    Convert wire data (bytes/string) to plain Python structures.
    Supported fmt: 'json', 'yaml'. If fmt is None, uses content_type, then sniffing.
    """
    enc = _encoding_from_content_type(content_type)
    text = _norm_text(data, encoding=enc)
    f = (fmt or detect_format(content_type, text))
    if f == 'json':
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            # Declared JSON that is really YAML
            try:
                return yaml.safe_load(text)
            except yaml.YAMLError as e:
                raise SerializationError(f"invalid JSON/YAML data: {e}")
    if f == 'yaml':
        try:
            return yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise SerializationError(f"invalid YAML data: {e}")
    if f is None:
        raise SerializationError("empty data")
    raise SerializationError(f"Unsupported serialization format: {f!r}")


def serialize(value: Any,
              *,
              fmt: str,
              pretty: bool = True) -> str:
    """
    Convert a plain Python value into text.
    - fmt: 'json' | 'yaml'
    """
    f = (fmt or '').lower()
    if f == 'json':
        return json.dumps(value, ensure_ascii=False, indent=2 if pretty else None)
    if f == 'yaml':
        return yaml.safe_dump(value, sort_keys=False)
    raise SerializationError(f"Unsupported serialization format: {fmt!r}")


def dump_variant(value: Variant, *, fmt: str = 'json', pretty: bool = True) -> str:
    return serialize(variant_to_builtin(value), fmt=fmt, pretty=pretty)


def load_variant(data: bytes | bytearray | str, *, fmt: Optional[str] = None) -> Variant:
    return variant_from_builtin(deserialize(data, fmt=fmt))


def dump_closure(closure: ClosureInfo, *, fmt: str = 'json', pretty: bool = True) -> str:
    return serialize(closure_to_builtin(closure), fmt=fmt, pretty=pretty)


def load_closure(data: bytes | bytearray | str, *, fmt: Optional[str] = None) -> ClosureInfo:
    """Reads a closure back. Function keys are not checked here."""
    return closure_from_builtin(deserialize(data, fmt=fmt))


__all__ = [
    "deserialize",
    "serialize",
    "detect_format",
    "variant_to_builtin",
    "variant_from_builtin",
    "closure_to_builtin",
    "closure_from_builtin",
    "dump_variant",
    "load_variant",
    "dump_closure",
    "load_closure",
]
