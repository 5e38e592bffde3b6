"""
Shared-ownership handles for native class instances.

Every live native instance that has crossed the boundary owns exactly one
reference-counted cell. Handles are holders of that cell: `alias()` adds a
holder, `release()` drops one, and when the last holder goes the instance is
released and the cell is invalidated. `copy_by_value()` makes an independent
instance with a fresh cell instead of aliasing.
"""
from __future__ import annotations

import copy
import threading
from typing import Any, Callable, Dict, Optional, TYPE_CHECKING

from xbridge.xbridge_config import _dbg
from xbridge.xbridge_errors import ObjectHandleError

if TYPE_CHECKING:
    from xbridge.xbridge_registry import ClassDescriptor


# Live cells keyed by id(instance). A live cell holds its instance strongly,
# so the id cannot be reused while the entry exists.
_LIVE_CELLS: Dict[int, "_HandleCell"] = {}
_CELLS_LOCK = threading.Lock()


class _HandleCell:
    __slots__ = ("instance", "descriptor", "refcount", "released", "lock")

    def __init__(self, instance: Any, descriptor: Optional["ClassDescriptor"]):
        self.instance = instance
        self.descriptor = descriptor
        self.refcount = 1
        self.released = False
        self.lock = threading.Lock()

    def acquire(self) -> None:
        if not self.try_acquire():
            raise ObjectHandleError("cannot alias a released object")

    def try_acquire(self) -> bool:
        with self.lock:
            if self.released:
                return False
            self.refcount += 1
            return True

    def drop(self) -> None:
        with self.lock:
            if self.released:
                return
            self.refcount -= 1
            if self.refcount > 0:
                return
            self.released = True
            instance = self.instance
            self.instance = None
        with _CELLS_LOCK:
            if _LIVE_CELLS.get(id(instance)) is self:
                del _LIVE_CELLS[id(instance)]
        _dbg("handle released", type(instance).__name__, id(instance))
        hook = getattr(instance, "__bridge_release__", None)
        if callable(hook):
            hook()


class ObjectHandle:
    """A holder of a shared native instance.

    Two handles on the same cell observe each other's mutations. A handle
    that has been released raises ObjectHandleError on every use.
    """

    def __init__(self, cell: _HandleCell):
        self._cell = cell
        self._released = False

    @classmethod
    def create(cls, instance: Any, descriptor: Optional["ClassDescriptor"] = None) -> "ObjectHandle":
        """Returns a holder for `instance`, aliasing its cell when it already has one."""
        if instance is None:
            raise ObjectHandleError("cannot create a handle for None")
        if isinstance(instance, ObjectHandle):
            return instance.alias()
        with _CELLS_LOCK:
            cell = _LIVE_CELLS.get(id(instance))
            if cell is not None and cell.instance is instance and cell.try_acquire():
                if cell.descriptor is None:
                    cell.descriptor = descriptor
                return cls(cell)
            cell = _HandleCell(instance, descriptor)
            _LIVE_CELLS[id(instance)] = cell
        _dbg("handle created", type(instance).__name__, id(instance))
        return cls(cell)

    # --- state ---
    @property
    def is_valid(self) -> bool:
        return not self._released and not self._cell.released

    def _live_cell(self) -> _HandleCell:
        if self._released:
            raise ObjectHandleError("object handle has been released")
        cell = self._cell
        if cell.released:
            raise ObjectHandleError("object handle refers to a released object")
        return cell

    @property
    def instance(self) -> Any:
        return self._live_cell().instance

    @property
    def descriptor(self) -> Optional["ClassDescriptor"]:
        return self._live_cell().descriptor

    @property
    def class_name(self) -> str:
        cell = self._live_cell()
        if cell.descriptor is not None:
            return cell.descriptor.name
        return type(cell.instance).__name__

    @property
    def refcount(self) -> int:
        return self._cell.refcount if not self._cell.released else 0

    # --- lifecycle ---
    def alias(self) -> "ObjectHandle":
        """Another holder on the same instance."""
        cell = self._live_cell()
        cell.acquire()
        return ObjectHandle(cell)

    def copy_by_value(self, copier: Optional[Callable[[Any], Any]] = None) -> "ObjectHandle":
        """A holder on a new, independent copy of the instance."""
        cell = self._live_cell()
        if copier is None and cell.descriptor is not None:
            copier = cell.descriptor.copy
        clone = (copier or copy.deepcopy)(cell.instance)
        if clone is cell.instance:
            raise ObjectHandleError(f"copy of {self.class_name} returned the same instance")
        return ObjectHandle.create(clone, cell.descriptor)

    def release(self) -> None:
        """Drops this holder. Releasing twice is a no-op."""
        if self._released:
            return
        self._released = True
        self._cell.drop()

    def same_object(self, other: "ObjectHandle") -> bool:
        return isinstance(other, ObjectHandle) and self._cell is other._cell

    def __enter__(self):
        self._live_cell()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False

    def __del__(self):
        if not getattr(self, "_released", True):
            self.release()

    def __eq__(self, other):
        if not isinstance(other, ObjectHandle):
            return NotImplemented
        return self._cell is other._cell

    def __hash__(self):
        return id(self._cell)

    def __repr__(self) -> str:
        if not self.is_valid:
            return "<ObjectHandle released>"
        return f"<ObjectHandle {self.class_name} #{id(self._cell.instance):x} refs={self.refcount}>"


def live_handle_count() -> int:
    """Number of native instances currently held through handles."""
    with _CELLS_LOCK:
        return len(_LIVE_CELLS)


__all__ = ["ObjectHandle", "live_handle_count"]
