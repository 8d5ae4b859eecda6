"""
Host-side wrappers for native objects and structs, and the identity table.

``ObjectTable.wrap(address, ...)`` returns the one live wrapper for a
native address, creating and registering it on first sight. The table
holds wrappers weakly: it relates addresses to wrappers but never keeps
them alive. A released handle drops out of the table, so the next wrap of
that address yields a fresh wrapper.

Wrappers delegate everything to the engine: method calls go through the
NativeInvoker, ownership through the OwnershipBridge, signals through the
SignalDispatcher.

Usage::

    widget = engine.invoke_by_name("Gtk", "Label.new", ["hello"])
    widget.set_property("label", "world")
    handler = widget.connect("destroy", on_destroy)
    widget.release()
"""

from __future__ import annotations

import threading
import weakref
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from ._logging import scoped_logger
from .exceptions import TypeMismatchError, UnknownMemberError
from .marshal import CallFrame, Site
from .ownership import NativeHandle, OwnershipBridge, OwnershipState
from .types import ObjectInfo, StructInfo, TypeDescriptor, qualify

if TYPE_CHECKING:
    from .engine import Engine

log = scoped_logger("ownership")


class NativeWrapper:
    """Common base of object and struct wrappers."""

    def __init__(self, engine: Engine, handle: NativeHandle):
        self._engine = engine
        self._handle = handle

    @property
    def address(self) -> int:
        return self._handle.address

    @property
    def handle(self) -> NativeHandle:
        return self._handle

    @property
    def info(self) -> StructInfo | ObjectInfo:
        return self._handle.info

    @property
    def type_name(self) -> str:
        return self._handle.info.qualified_name

    @property
    def state(self) -> OwnershipState:
        return self._handle.state

    @property
    def released(self) -> bool:
        return self._handle.released

    def invoke(self, method: str, *args: Any) -> Any:
        """Call an instance method of this type (or an ancestor)."""
        return self._engine.invoke_method(self, method, args)

    def release(self) -> None:
        """
        Release the native handle now.

        Raises
        ------
        DoubleReleaseError
            If the handle was already released.
        """
        self._engine.ownership.release(self._handle)

    def close(self) -> None:
        """Release the native handle if still live. Idempotent."""
        if not self._handle.released:
            self.release()

    def __enter__(self) -> NativeWrapper:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def __del__(self) -> None:
        try:
            self._engine.ownership.collect(self._handle)
        except Exception:
            pass

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}({self.type_name}, 0x{self.address:x}, "
            f"{self._handle.state.value})"
        )


class StructWrapper(NativeWrapper):
    """Wrapper for a struct / boxed value."""

    info: StructInfo

    def get_field(self, name: str) -> Any:
        """
        Read a field.

        Raises
        ------
        UnknownMemberError
            If the struct has no such field.
        MemberAccessError
            If the field is not readable.
        """
        self._engine.ownership.check_live(self._handle)
        field = self._field(name)
        return self._engine.marshaller.read_field(self.address, field, self.type_name)

    def set_field(self, name: str, value: Any) -> None:
        """Write a field (``MemberAccessError`` if it is not writable)."""
        self._engine.ownership.check_live(self._handle)
        field = self._field(name)
        self._engine.marshaller.write_field(self.address, field, value, self.type_name)

    def _field(self, name: str):
        info = self._handle.info
        assert isinstance(info, StructInfo)
        field = info.find_field(name)
        if field is None:
            raise UnknownMemberError(
                f"{self.type_name} has no field {name!r}",
                details={"callable": self.type_name, "parameter": name},
            )
        return field


class ObjectWrapper(NativeWrapper):
    """Wrapper for a reference-counted native object."""

    info: ObjectInfo

    def get_property(self, name: str) -> Any:
        return self._engine.get_property(self, name)

    def set_property(self, name: str, value: Any) -> None:
        self._engine.set_property(self, name, value)

    def connect(self, signal: str, callback: Callable[..., Any]) -> int:
        """
        Connect ``callback`` to ``signal``.

        The callback receives this wrapper followed by the signal arguments.
        Returns the registration id for ``disconnect``.
        """
        return self._engine.connect_signal(self, signal, callback)

    def disconnect(self, registration_id: int) -> None:
        self._engine.disconnect_signal(registration_id)

    def retain(self) -> None:
        """Take a native reference so the host owns this object."""
        self._engine.ownership.retain(self._handle)

    def is_a(self, type_name: str) -> bool:
        """True if this object's type is ``type_name`` or derives from it."""
        return self._engine.objects.is_subtype(self.info, type_name)


class ObjectTable:
    """
    Identity table: native address -> the live wrapper for it.

    Implements the marshaller's ``HandleBridge``.
    """

    def __init__(
        self,
        engine: Engine,
        ownership: OwnershipBridge,
        interfaces: Callable[[str], Any],
        lock: threading.RLock | None = None,
    ):
        self._engine = engine
        self._ownership = ownership
        self._interfaces = interfaces
        self._lock = lock or threading.RLock()
        self._wrappers: weakref.WeakValueDictionary[int, NativeWrapper] = (
            weakref.WeakValueDictionary()
        )
        ownership.add_release_listener(self._forget)

    def __len__(self) -> int:
        return len(self._wrappers)

    def __contains__(self, address: object) -> bool:
        return address in self._wrappers

    def get(self, address: int) -> NativeWrapper | None:
        return self._wrappers.get(address)

    def wrap(
        self, address: int, descriptor: TypeDescriptor, info: StructInfo | ObjectInfo
    ) -> NativeWrapper:
        """Return the wrapper for ``address``, creating it on first sight."""
        with self._lock:
            handle = self._ownership.adopt(address, descriptor, info)
            wrapper = self._wrappers.get(address)
            if wrapper is not None and wrapper.handle is handle:
                if isinstance(info, ObjectInfo) and info is not handle.info:
                    if self.is_subtype(info, handle.info.qualified_name):
                        # Seen as a more derived type than before
                        handle.info = info
                return wrapper
            cls = ObjectWrapper if isinstance(info, ObjectInfo) else StructWrapper
            wrapper = cls(self._engine, handle)
            self._wrappers[address] = wrapper
        return wrapper

    def adopt_buffer(self, address: int, info: StructInfo) -> StructWrapper:
        with self._lock:
            handle = self._ownership.adopt_buffer(address, info)
            wrapper = StructWrapper(self._engine, handle)
            self._wrappers[address] = wrapper
        return wrapper

    def unwrap(
        self,
        value: Any,
        descriptor: TypeDescriptor,
        info: StructInfo | ObjectInfo,
        site: Site,
        frame: CallFrame | None = None,
    ) -> int:
        """Return the address to pass for ``value`` as ``descriptor``."""
        if not isinstance(value, NativeWrapper):
            raise TypeMismatchError(
                f"{site} expects {info.qualified_name}, got {type(value).__name__}",
                details=site.details(expected=info.qualified_name, got=type(value).__name__),
            )
        if isinstance(info, ObjectInfo):
            compatible = isinstance(value.info, ObjectInfo) and self.is_subtype(
                value.info, info.qualified_name
            )
        else:
            compatible = value.info.qualified_name == info.qualified_name
        if not compatible:
            raise TypeMismatchError(
                f"{site} expects {info.qualified_name}, got {value.type_name}",
                details=site.details(expected=info.qualified_name, got=value.type_name),
            )
        return self._ownership.surrender(value.handle, descriptor, frame)

    def discard(self, value: Any) -> None:
        """Release ``value`` (or owned wrappers inside it) after a failed call."""
        if isinstance(value, NativeWrapper):
            if value.state is OwnershipState.OWNED:
                value.release()
        elif isinstance(value, (list, tuple)):
            for item in value:
                self.discard(item)

    def is_subtype(self, info: StructInfo | ObjectInfo, ancestor: str) -> bool:
        """Walk ``info``'s parent chain looking for ``ancestor``."""
        current: Any = info
        while current is not None:
            if current.qualified_name == ancestor:
                return True
            parent = getattr(current, "parent", None)
            current = self._interfaces(qualify(current.namespace, parent)) if parent else None
        return False

    def _forget(self, handle: NativeHandle) -> None:
        with self._lock:
            wrapper = self._wrappers.get(handle.address)
            if wrapper is not None and wrapper.handle is handle:
                del self._wrappers[handle.address]

    def clear(self) -> None:
        with self._lock:
            self._wrappers.clear()
