"""
A pretty-printer for variants, closures and published descriptors.
"""
import collections.abc
import json

import pystache

from xbridge.xbridge_datatypes import Variant, VariantType, ClosureInfo, Image
from xbridge.xbridge_handles import ObjectHandle


_INLINE_WIDTH = 72


class Printer:
    """Formats variants into a compact, readable literal syntax."""

    def __init__(self, indent_width=2):
        self._indent_char = " " * indent_width
        self._handlers = self._create_handlers()

    def pformat(self, obj, level=0):
        """Public entry point to format an object."""
        handler = self._get_handler(obj)
        return handler(obj, level)

    def _get_handler(self, obj):
        """Dispatcher to find the correct formatting method."""
        if isinstance(obj, Variant):
            return self._handlers[obj.type]
        if isinstance(obj, ClosureInfo):
            return self._pformat_closure
        if isinstance(obj, ObjectHandle):
            return self._pformat_handle
        if isinstance(obj, Image):
            return self._pformat_image
        if isinstance(obj, collections.abc.Mapping):
            return self._pformat_mapping
        if isinstance(obj, (list, tuple)):
            return self._pformat_sequence
        # Default to Python's repr for unknown types
        return lambda o, l: repr(o)

    def _create_handlers(self):
        return {
            VariantType.INTEGER: self._pformat_primitive,
            VariantType.FLOAT: self._pformat_float,
            VariantType.STRING: self._pformat_str,
            VariantType.DATETIME: self._pformat_datetime,
            VariantType.IMAGE: lambda v, l: self._pformat_image(v.value, l),
            VariantType.LIST: lambda v, l: self._pformat_sequence(v.value, l),
            VariantType.DICT: lambda v, l: self._pformat_pairs(v.value, l),
            VariantType.OBJECT: lambda v, l: self._pformat_handle(v.value, l),
            VariantType.CLOSURE: lambda v, l: self._pformat_closure(v.value, l),
            VariantType.UNDEFINED: self._pformat_undefined,
        }

    def _pformat_primitive(self, obj, level):
        return str(obj.value)

    def _pformat_float(self, obj, level):
        return repr(obj.value)

    def _pformat_str(self, obj, level):
        return json.dumps(obj.value, ensure_ascii=False)

    def _pformat_datetime(self, obj, level):
        return f"@{obj.value.isoformat()}"

    def _pformat_undefined(self, obj, level):
        return "undefined"

    def _pformat_image(self, img, level):
        return f"<image {img.width}x{img.height}x{img.channels} {img.format} {len(img.data)} bytes>"

    def _pformat_handle(self, handle, level):
        if not handle.is_valid:
            return "<released object>"
        return f"<{handle.class_name} #{id(handle.instance):x}>"

    def _pformat_closure(self, closure, level):
        parts = []
        for slot in closure.arguments:
            if slot.is_param:
                parts.append(f"_{slot.index}")
            else:
                parts.append(self.pformat(slot.value, level))
        return f"{closure.function}({', '.join(parts)})"

    def _pformat_block(self, items, level, open_char, close_char):
        if not items:
            return f"{open_char}{close_char}"
        inline = f"{open_char}{', '.join(items)}{close_char}"
        if len(inline) + len(self._indent_char) * level <= _INLINE_WIDTH and "\n" not in inline:
            return inline
        outer_indent = self._indent_char * level
        inner_indent = self._indent_char * (level + 1)
        lines = [inner_indent + item + "," for item in items]
        return f"{open_char}\n" + "\n".join(lines) + f"\n{outer_indent}{close_char}"

    def _pformat_sequence(self, items, level):
        return self._pformat_block([self.pformat(v, level + 1) for v in items], level, "[", "]")

    def _pformat_pairs(self, pairs, level):
        items = [f"{self.pformat(k, level + 1)}: {self.pformat(v, level + 1)}" for k, v in pairs]
        return self._pformat_block(items, level, "{", "}")

    def _pformat_mapping(self, obj, level):
        return self._pformat_pairs(list(obj.items()), level)


# --------------------------
# Help text
# --------------------------

_FUNCTION_TEMPLATE = """{{name}}({{signature}}){{#returns}} -> {{returns}}{{/returns}}
{{#doc}}

{{doc}}
{{/doc}}"""

_CLASS_TEMPLATE = """class {{name}}
{{#doc}}

{{doc}}
{{/doc}}
{{#has_methods}}

methods:
{{#methods}}
  {{.}}
{{/methods}}
{{/has_methods}}
{{#has_properties}}

properties:
{{#properties}}
  {{name}}: {{type}} ({{access}})
{{/properties}}
{{/has_properties}}"""


def _render(template: str, context: dict) -> str:
    renderer = pystache.Renderer(escape=lambda u: u)
    return renderer.render(template, context).rstrip() + "\n"


def _signature(desc) -> str:
    from xbridge.xbridge_convert import hint_name
    parts = []
    for p in desc.host_params:
        text = f"{p.name}: {hint_name(p.hint)}"
        if not p.required:
            text += f" = {p.default!r}"
        parts.append(text)
    return ", ".join(parts)


def describe_function(desc) -> str:
    """Help text for a CallableDescriptor."""
    from xbridge.xbridge_convert import hint_name
    return _render(_FUNCTION_TEMPLATE, {
        "name": desc.name,
        "signature": _signature(desc),
        "returns": hint_name(desc.return_hint),
        "doc": desc.doc or "",
    })


def describe_class(desc) -> str:
    """Help text for a ClassDescriptor."""
    from xbridge.xbridge_convert import hint_name
    properties = []
    for name in desc.property_names():
        getter = desc.getter(name)
        setter = desc.setter(name)
        hint = getter.return_hint if getter is not None else setter.host_params[0].hint
        access = "read/write" if getter and setter else ("read" if getter else "write")
        properties.append({"name": name, "type": hint_name(hint), "access": access})
    methods = [f"{m.name}({_signature(m)}) -> {hint_name(m.return_hint)}"
               for m in sorted(desc.methods.values(), key=lambda d: d.name)]
    return _render(_CLASS_TEMPLATE, {
        "name": desc.name,
        "doc": desc.doc or "",
        "has_methods": bool(methods),
        "methods": methods,
        "has_properties": bool(properties),
        "properties": properties,
    })


__all__ = ["Printer", "describe_function", "describe_class"]
