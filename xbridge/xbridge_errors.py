"""
Error taxonomy for the xbridge boundary.

Every failure the dispatcher can report is one of these. The dispatcher never
lets anything else escape `invoke`; the host facade re-raises them.
"""
from typing import Any, List, Optional


class BridgeError(Exception):
    """ Base class for all bridge errors"""
    kind = "BridgeError"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class TypeConversionError(BridgeError):
    """ Raised when a value cannot be converted to or from its required type"""
    kind = "TypeConversionError"

    def __init__(self, expected: str, actual: str, *,
                 path: Optional[List[Any]] = None,
                 param: Optional[str] = None,
                 position: Optional[int] = None,
                 detail: Optional[str] = None):
        self.expected = expected
        self.actual = actual
        self.path = list(path or [])
        self.param = param
        self.position = position
        self.detail = detail
        super().__init__(self._build_message())

    @property
    def key(self) -> Any:
        """The innermost failing index or key, when the failure is inside a container."""
        return self.path[-1] if self.path else None

    def at(self, step: Any) -> "TypeConversionError":
        """Prefix a container step (index or key) to the failing path."""
        self.path.insert(0, step)
        self.message = self._build_message()
        self.args = (self.message,)
        return self

    def for_param(self, name: Optional[str], position: int) -> "TypeConversionError":
        self.param = name
        self.position = position
        self.message = self._build_message()
        self.args = (self.message,)
        return self

    def _build_message(self) -> str:
        msg = f"expected {self.expected}, got {self.actual}"
        if self.path:
            where = "".join(f"[{step!r}]" for step in self.path)
            msg += f" at {where}"
        if self.param is not None or self.position is not None:
            msg = f"parameter {self.param!r} (position {self.position}): " + msg
        if self.detail:
            msg += f" ({self.detail})"
        return msg


class ArityError(BridgeError):
    """ Raised when the number of arguments passed to a function is incorrect"""
    kind = "ArityError"


class UnknownNameError(BridgeError):
    """ Raised when a function, class, method, or property name is not registered"""
    kind = "UnknownNameError"

    def __init__(self, message: str, name: Optional[str] = None):
        super().__init__(message)
        self.name = name


class ObjectHandleError(BridgeError):
    """ Raised when an operation is attempted on a released object handle"""
    kind = "ObjectHandleError"


class NativeException(BridgeError):
    """ Raised when native code signals failure; the message text is kept verbatim"""
    kind = "NativeException"

    def __init__(self, message: str, exc_type: Optional[str] = None):
        super().__init__(message)
        self.exc_type = exc_type


class ClosureValidationError(BridgeError):
    """ Raised when a captured callable is not a simple call to a registered function"""
    kind = "ClosureValidationError"


class SerializationError(BridgeError):
    """ Raised when persisted data cannot be reconstructed"""
    kind = "SerializationError"


class RegistrationError(BridgeError):
    """ Raised at load time when a module's registration tables are invalid"""
    kind = "RegistrationError"


class ModuleLoadError(BridgeError):
    """ Raised when a module cannot be located, fetched, or executed"""
    kind = "ModuleLoadError"


__all__ = [
    "BridgeError",
    "TypeConversionError",
    "ArityError",
    "UnknownNameError",
    "ObjectHandleError",
    "NativeException",
    "ClosureValidationError",
    "SerializationError",
    "RegistrationError",
    "ModuleLoadError",
]
