from xbridge.xbridge_datatypes import Variant, VariantType, Image, ClosureInfo, ClosureArg, UNDEFINED
from xbridge.xbridge_errors import (
    BridgeError, TypeConversionError, ArityError, UnknownNameError, ObjectHandleError,
    NativeException, ClosureValidationError, SerializationError, RegistrationError, ModuleLoadError,
)
from xbridge.xbridge_convert import Shared
from xbridge.xbridge_registry import (
    ModuleRegistration, export, bridge_class, bridge_method, bridge_getter, bridge_setter,
)
from xbridge.xbridge_runtime import Bridge, HostObject

__all__ = [
    "Variant", "VariantType", "Image", "ClosureInfo", "ClosureArg", "UNDEFINED",
    "BridgeError", "TypeConversionError", "ArityError", "UnknownNameError", "ObjectHandleError",
    "NativeException", "ClosureValidationError", "SerializationError", "RegistrationError",
    "ModuleLoadError", "Shared", "ModuleRegistration", "export", "bridge_class", "bridge_method",
    "bridge_getter", "bridge_setter", "Bridge", "HostObject",
]
