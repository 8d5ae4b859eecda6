"""
OwnershipBridge - single source of truth for who frees a native resource.

Every object or struct pointer that crosses into host space gets one
``NativeHandle`` per address, in one of three states:

- ``borrowed``: native code owns it; the engine never frees it
- ``owned``: the host holds ``owned_refs`` references (objects) or the
  allocation itself (structs) and must release them exactly once
- ``released``: freed or forgotten; using it again is an error

Explicit ``release()`` is the primary path and raises
``DoubleReleaseError`` the second time. ``collect()`` is the finalizer
backstop run when a wrapper becomes unreachable: it frees owned handles
and merely forgets borrowed ones.

Release listeners (signal invalidation, the identity table) run before the
native free so nothing can dispatch into a dead object.
"""

from __future__ import annotations

import ctypes
import threading
from collections.abc import Callable
from enum import Enum
from typing import Any

from ._logging import scoped_logger
from .exceptions import DoubleReleaseError, GirError, StateError
from .marshal._native import CAllocator
from .marshal.frame import CallFrame
from .types import ObjectInfo, StructInfo, Transfer, TypeDescriptor, qualify, split_qualified

log = scoped_logger("ownership")

_REF_FUNC = ctypes.CFUNCTYPE(ctypes.c_void_p, ctypes.c_void_p)
_UNREF_FUNC = ctypes.CFUNCTYPE(None, ctypes.c_void_p)

SymbolResolver = Callable[[str, str], int]
InterfaceLookup = Callable[[str], Any]


class OwnershipState(Enum):
    BORROWED = "borrowed"
    OWNED = "owned"
    RELEASED = "released"


class NativeHandle:
    """
    One native pointer known to the host.

    Attributes
    ----------
    address : int
        The native pointer.
    descriptor : TypeDescriptor
        Type the pointer was first seen as.
    info : StructInfo or ObjectInfo
        Metadata of the pointed-to type.
    state : OwnershipState
        Current ownership.
    owned_refs : int
        References (or allocations) the host must give back on release.
    host_allocated : bool
        Memory came from the engine's allocator (caller-allocated structs).
    pins : int
        Live signal registrations; a pinned borrowed handle outlives its wrapper.
    """

    __slots__ = (
        "address",
        "descriptor",
        "info",
        "state",
        "owned_refs",
        "host_allocated",
        "pins",
        "detached",
        "__weakref__",
    )

    def __init__(
        self,
        address: int,
        descriptor: TypeDescriptor,
        info: StructInfo | ObjectInfo,
        state: OwnershipState = OwnershipState.BORROWED,
    ):
        self.address = address
        self.descriptor = descriptor
        self.info = info
        self.state = state
        self.owned_refs = 0
        self.host_allocated = False
        self.pins = 0
        self.detached = False

    @property
    def is_object(self) -> bool:
        return isinstance(self.info, ObjectInfo)

    @property
    def released(self) -> bool:
        return self.state is OwnershipState.RELEASED

    def __repr__(self) -> str:
        return (
            f"NativeHandle({self.info.qualified_name}, 0x{self.address:x}, "
            f"{self.state.value}, refs={self.owned_refs})"
        )


class OwnershipBridge:
    """
    Tracks native handles and applies transfer annotations.

    Parameters
    ----------
    resolve_symbol : callable
        ``(namespace, symbol) -> address`` for ref/unref/copy/free functions.
    interfaces : callable
        Qualified name -> info, used to walk object parents.
    allocator : CAllocator
        Frees host-allocated buffers and structs without a free function.
    default_ref, default_unref : str
        Qualified symbols used for objects whose metadata names none.
    lock : threading.RLock, optional
        Engine-wide lock.
    """

    def __init__(
        self,
        resolve_symbol: SymbolResolver,
        interfaces: InterfaceLookup,
        allocator: CAllocator,
        default_ref: str = "GObject.g_object_ref",
        default_unref: str = "GObject.g_object_unref",
        lock: threading.RLock | None = None,
    ):
        self._resolve = resolve_symbol
        self._interfaces = interfaces
        self._allocator = allocator
        self._default_ref = default_ref
        self._default_unref = default_unref
        self._lock = lock or threading.RLock()
        self._handles: dict[int, NativeHandle] = {}
        self._functions: dict[tuple[int, Any], Any] = {}
        self._listeners: list[Callable[[NativeHandle], None]] = []

    def __len__(self) -> int:
        return len(self._handles)

    def add_release_listener(self, listener: Callable[[NativeHandle], None]) -> None:
        """Call ``listener(handle)`` before any handle is released."""
        self._listeners.append(listener)

    def lookup(self, address: int) -> NativeHandle | None:
        return self._handles.get(address)

    def state_of(self, address: int) -> OwnershipState | None:
        handle = self._handles.get(address)
        return handle.state if handle is not None else None

    # =========================================================================
    # Native -> host
    # =========================================================================

    def adopt(
        self,
        address: int,
        descriptor: TypeDescriptor,
        info: StructInfo | ObjectInfo,
    ) -> NativeHandle:
        """
        Record a pointer received from native code.

        With transfer ``none`` the handle stays (or becomes) borrowed. With
        ``full`` (or ``container``) the host now owns one more reference.
        """
        with self._lock:
            handle = self._handles.get(address)
            if handle is None or handle.released:
                handle = NativeHandle(address, descriptor, info)
                self._handles[address] = handle
            handle.detached = False
            if descriptor.transfer is not Transfer.NONE:
                # Structs are owned as one allocation, objects per reference
                handle.owned_refs = handle.owned_refs + 1 if handle.is_object else 1
                handle.state = OwnershipState.OWNED
        log.debug(
            "Adopted native handle",
            extra={
                "callable": info.qualified_name,
                "address": hex(address),
                "state": handle.state.value,
                "refs": handle.owned_refs,
            },
        )
        return handle

    def adopt_buffer(self, address: int, info: StructInfo) -> NativeHandle:
        """Record a struct buffer the engine allocated on the caller's behalf."""
        with self._lock:
            handle = NativeHandle(
                address, TypeDescriptor.struct(info.qualified_name, Transfer.FULL), info
            )
            handle.state = OwnershipState.OWNED
            handle.owned_refs = 1
            handle.host_allocated = True
            self._handles[address] = handle
        return handle

    # =========================================================================
    # Host -> native
    # =========================================================================

    def surrender(
        self, handle: NativeHandle, descriptor: TypeDescriptor, frame: CallFrame | None = None
    ) -> int:
        """
        Return the address to pass for an in argument.

        With transfer ``full`` the callee takes ownership: objects get an
        extra reference, structs are copied when a copy function exists,
        otherwise the host gives up its own ownership. Each of these is
        reverted if ``frame`` closes without being committed.
        """
        self.check_live(handle)
        if descriptor.transfer is Transfer.NONE:
            return handle.address
        if handle.is_object:
            self._ref(handle)
            if frame is not None:
                frame.undo(lambda: self._unref(handle.address, handle.info))
            return handle.address
        copy = self._struct_function(handle, "copy")
        if copy is not None:
            address = copy(handle.address) or 0
            if frame is not None and address:
                frame.undo(lambda: self._free_struct(address, handle.info))
            return address
        with self._lock:
            state, refs = handle.state, handle.owned_refs
            if state is OwnershipState.OWNED:
                handle.state = OwnershipState.BORROWED
                handle.owned_refs = 0
        if frame is not None and state is OwnershipState.OWNED:
            frame.undo(lambda: self._restore(handle, state, refs))
        return handle.address

    def retain(self, handle: NativeHandle) -> None:
        """Take an additional native reference; the handle becomes owned."""
        self.check_live(handle)
        if not handle.is_object:
            raise StateError(
                f"{handle.info.qualified_name} is not reference counted",
                details={"callable": handle.info.qualified_name},
            )
        self._ref(handle)
        with self._lock:
            handle.owned_refs += 1
            handle.state = OwnershipState.OWNED

    def check_live(self, handle: NativeHandle) -> None:
        if handle.released:
            raise StateError(
                f"{handle.info.qualified_name} at 0x{handle.address:x} has been released",
                details={"callable": handle.info.qualified_name, "address": handle.address},
            )

    # =========================================================================
    # Release
    # =========================================================================

    def release(self, handle: NativeHandle) -> None:
        """
        Release ``handle``.

        Owned handles give back every reference the host holds; borrowed
        handles are only forgotten.

        Raises
        ------
        DoubleReleaseError
            If the handle was already released.
        """
        with self._lock:
            if handle.released:
                raise DoubleReleaseError(
                    f"{handle.info.qualified_name} at 0x{handle.address:x} released twice",
                    details={"callable": handle.info.qualified_name, "address": handle.address},
                )
            for listener in list(self._listeners):
                listener(handle)
            refs = handle.owned_refs
            handle.owned_refs = 0
            handle.state = OwnershipState.RELEASED
            if self._handles.get(handle.address) is handle:
                del self._handles[handle.address]
        for _ in range(refs):
            self._free(handle)
        log.debug(
            "Released native handle",
            extra={
                "callable": handle.info.qualified_name,
                "address": hex(handle.address),
                "refs": refs,
            },
        )

    def collect(self, handle: NativeHandle) -> None:
        """
        Finalizer backstop: free owned handles, forget borrowed ones.

        A borrowed handle with signal registrations stays known until the
        last of them goes away, so the next wrapper of the same address
        shares it.
        """
        if handle.released:
            return
        if handle.state is OwnershipState.OWNED:
            self.release(handle)
            return
        with self._lock:
            if handle.pins:
                handle.detached = True
            elif self._handles.get(handle.address) is handle:
                del self._handles[handle.address]

    def pin(self, handle: NativeHandle) -> None:
        with self._lock:
            handle.pins += 1

    def unpin(self, handle: NativeHandle) -> None:
        with self._lock:
            handle.pins = max(handle.pins - 1, 0)
            if handle.pins or not handle.detached or handle.released:
                return
            if self._handles.get(handle.address) is handle:
                del self._handles[handle.address]

    def shutdown(self) -> None:
        """Release every owned handle and forget the rest."""
        with self._lock:
            handles = list(self._handles.values())
        for handle in handles:
            if handle.state is OwnershipState.OWNED:
                try:
                    self.release(handle)
                except GirError:
                    log.error("Failed to release handle at shutdown", exc_info=True)
        with self._lock:
            self._handles.clear()

    # =========================================================================
    # Native functions
    # =========================================================================

    def _bound(self, address: int, prototype: Any) -> Any:
        key = (address, prototype)
        fn = self._functions.get(key)
        if fn is None:
            fn = self._functions.setdefault(key, prototype(address))
        return fn

    def _symbol(self, namespace: str, symbol: str, prototype: Any) -> Any:
        if "." in symbol:
            namespace, symbol = split_qualified(symbol)
        return self._bound(self._resolve(namespace, symbol), prototype)

    def _object_function(self, info: ObjectInfo, which: str) -> Any:
        current: ObjectInfo | None = info
        while current is not None:
            symbol = current.ref_function if which == "ref" else current.unref_function
            if symbol:
                prototype = _REF_FUNC if which == "ref" else _UNREF_FUNC
                return self._symbol(current.namespace, symbol, prototype)
            current = (
                self._interfaces(qualify(current.namespace, current.parent))
                if current.parent
                else None
            )
        default = self._default_ref if which == "ref" else self._default_unref
        namespace, symbol = split_qualified(default)
        return self._symbol(namespace, symbol, _REF_FUNC if which == "ref" else _UNREF_FUNC)

    def _struct_function(self, handle: NativeHandle, which: str) -> Any:
        return self._struct_info_function(handle.info, which)

    def _struct_info_function(self, info: StructInfo | ObjectInfo, which: str) -> Any:
        assert isinstance(info, StructInfo)
        symbol = info.copy_function if which == "copy" else info.free_function
        if not symbol:
            return None
        return self._symbol(info.namespace, symbol, _REF_FUNC if which == "copy" else _UNREF_FUNC)

    def _ref(self, handle: NativeHandle) -> None:
        assert isinstance(handle.info, ObjectInfo)
        self._object_function(handle.info, "ref")(handle.address)

    def _unref(self, address: int, info: StructInfo | ObjectInfo) -> None:
        assert isinstance(info, ObjectInfo)
        self._object_function(info, "unref")(address)

    def _free_struct(self, address: int, info: StructInfo | ObjectInfo) -> None:
        free = self._struct_info_function(info, "free")
        if free is not None:
            free(address)
        else:
            self._allocator.free(address)

    def _restore(self, handle: NativeHandle, state: OwnershipState, refs: int) -> None:
        with self._lock:
            if handle.state is OwnershipState.BORROWED:
                handle.state = state
                handle.owned_refs = refs

    def _free(self, handle: NativeHandle) -> None:
        if handle.host_allocated:
            self._allocator.free(handle.address)
        elif handle.is_object:
            self._unref(handle.address, handle.info)
        else:
            self._free_struct(handle.address, handle.info)
