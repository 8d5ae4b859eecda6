"""
SignalDispatcher - host callbacks connected to native signals.

``connect`` builds the reverse plan of the signal's handler signature
``(instance, *args, user_data)``, installs a trampoline for the host
callback and registers it natively through the configured connect entry
point (``g_signal_connect_data`` by default). Each native emission calls
the host callback as ``callback(source, *args)`` with arguments converted
by the same marshaller used for forward calls; the callback's return value
is converted back when the signal has one.

``disconnect`` is idempotent: disconnecting twice is fine, only an id this
dispatcher never issued raises ``UnknownRegistrationError``. When a source
handle is released, its registrations are disconnected natively before the
object is freed.
"""

from __future__ import annotations

import ctypes
import itertools
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from ._logging import scoped_logger
from .exceptions import GirError, UnknownRegistrationError
from .invoke import NativeInvoker, Trampoline
from .ownership import NativeHandle, OwnershipBridge
from .types import (
    CallableSignature,
    ObjectInfo,
    ParameterSpec,
    PrimitiveTag,
    Scope,
    SignalInfo,
    TypeDescriptor,
    TypeKind,
)

log = scoped_logger("signal")

_GULONG = PrimitiveTag.UINT64 if ctypes.sizeof(ctypes.c_ulong) == 8 else PrimitiveTag.UINT32
_POINTER = TypeDescriptor.void(pointer=True)

CONNECT_SIGNATURE = CallableSignature.build(
    "signal_connect_data",
    [
        ParameterSpec("instance", _POINTER),
        ParameterSpec("detailed_signal", TypeDescriptor.utf8()),
        ParameterSpec("c_handler", _POINTER),
        ParameterSpec("data", _POINTER),
        ParameterSpec("destroy_data", _POINTER),
        ParameterSpec("connect_flags", TypeDescriptor.primitive(PrimitiveTag.INT32)),
    ],
    returns=TypeDescriptor.primitive(_GULONG),
    namespace="GObject",
)

DISCONNECT_SIGNATURE = CallableSignature.build(
    "signal_handler_disconnect",
    [
        ParameterSpec("instance", _POINTER),
        ParameterSpec("handler_id", TypeDescriptor.primitive(_GULONG)),
    ],
    namespace="GObject",
)

SignalLookup = Callable[[ObjectInfo, str], tuple[ObjectInfo, SignalInfo]]


@dataclass(eq=False)
class SignalRegistration:
    """One connected host callback."""

    id: int
    source: NativeHandle
    signal: str
    callback: Callable[..., Any]
    connection_id: int = 0
    trampoline: Trampoline | None = field(default=None, repr=False)
    active: bool = True


class SignalDispatcher:
    """
    Connects host callbacks to native signals and tracks registrations.

    Parameters
    ----------
    invoker : NativeInvoker
        Used for the native connect/disconnect calls and to create trampolines.
    ownership : OwnershipBridge
        Registrations are invalidated when their source handle is released.
    find_signal : callable
        ``(object_info, name) -> (declaring_info, signal_info)``; raises
        ``UnknownMemberError`` for unknown signals.
    resolve_symbol : callable
        Qualified symbol name -> address.
    connect_symbol, disconnect_symbol : str
        Qualified native entry points.
    """

    def __init__(
        self,
        invoker: NativeInvoker,
        ownership: OwnershipBridge,
        find_signal: SignalLookup,
        resolve_symbol: Callable[[str], int],
        connect_symbol: str = "GObject.g_signal_connect_data",
        disconnect_symbol: str = "GObject.g_signal_handler_disconnect",
        lock: threading.RLock | None = None,
    ):
        self._invoker = invoker
        self._ownership = ownership
        self._find_signal = find_signal
        self._resolve = resolve_symbol
        self._connect_symbol = connect_symbol
        self._disconnect_symbol = disconnect_symbol
        self._lock = lock or threading.RLock()
        self._registrations: dict[int, SignalRegistration] = {}
        self._ids = itertools.count(1)
        self._last_id = 0
        ownership.add_release_listener(self._invalidate)

    def __len__(self) -> int:
        return len(self._registrations)

    def registrations(self, handle: NativeHandle | None = None) -> list[SignalRegistration]:
        """Active registrations, optionally only those of ``handle``."""
        with self._lock:
            return [
                r
                for r in self._registrations.values()
                if handle is None or r.source is handle
            ]

    def connect(self, source: Any, signal: str, callback: Callable[..., Any]) -> int:
        """
        Connect ``callback`` to ``signal`` on the object wrapped by ``source``.

        ``signal`` may carry a detail (``"notify::label"``); the detail is
        passed to native code, the base name selects the signal metadata.

        Raises
        ------
        UnknownMemberError
            If the object type has no such signal.
        StateError
            If ``source`` has been released.
        TypeError
            If ``callback`` is not callable.
        """
        if not callable(callback):
            raise TypeError(f"callback must be callable, got {type(callback).__name__}")
        handle: NativeHandle = source.handle
        self._ownership.check_live(handle)
        info = handle.info
        assert isinstance(info, ObjectInfo)
        owner, signal_info = self._find_signal(info, signal.partition("::")[0])

        plan = self._invoker.plans.get(signal_info.handler_signature(owner), reverse=True)
        registration = SignalRegistration(
            id=0, source=handle, signal=signal, callback=callback
        )
        default = _default_return(signal_info)

        def dispatch(*args: Any) -> Any:
            if not registration.active:
                return default
            return callback(*args)

        trampoline = self._invoker.trampolines.create(plan, dispatch, Scope.FOREVER)
        try:
            connection_id = self._invoker.call(
                self._resolve(self._connect_symbol),
                CONNECT_SIGNATURE,
                [handle.address, signal, trampoline.address, trampoline.token, None, 0],
            )
        except BaseException:
            self._invoker.trampolines.retire(trampoline)
            raise
        if not connection_id:
            self._invoker.trampolines.retire(trampoline)
            raise GirError(
                f"Native code refused to connect {info.qualified_name}::{signal}",
                code="SIGNAL_CONNECT_FAILED",
                details={"callable": info.qualified_name, "signal": signal},
            )

        with self._lock:
            registration.id = next(self._ids)
            registration.connection_id = connection_id
            registration.trampoline = trampoline
            self._last_id = registration.id
            self._registrations[registration.id] = registration
            self._ownership.pin(handle)
        log.debug(
            "Connected signal handler",
            extra={
                "callable": f"{info.qualified_name}::{signal}",
                "registration": registration.id,
                "connection": connection_id,
            },
        )
        return registration.id

    def disconnect(self, registration_id: int) -> None:
        """
        Disconnect a registration. Idempotent.

        Raises
        ------
        UnknownRegistrationError
            If ``registration_id`` was never issued by this dispatcher.
        """
        with self._lock:
            registration = self._registrations.get(registration_id)
            if registration is None:
                if isinstance(registration_id, int) and 0 < registration_id <= self._last_id:
                    return
                raise UnknownRegistrationError(
                    f"Signal registration {registration_id!r} was never issued",
                    details={"registration": registration_id},
                )
            self._deactivate(registration)

    def _deactivate(self, registration: SignalRegistration) -> None:
        registration.active = False
        self._registrations.pop(registration.id, None)
        self._ownership.unpin(registration.source)
        if not registration.source.released:
            self._invoker.call(
                self._resolve(self._disconnect_symbol),
                DISCONNECT_SIGNATURE,
                [registration.source.address, registration.connection_id],
            )
        if registration.trampoline is not None:
            self._invoker.trampolines.retire(registration.trampoline)
        log.debug(
            "Disconnected signal handler",
            extra={
                "callable": f"{registration.source.info.qualified_name}::{registration.signal}",
                "registration": registration.id,
            },
        )

    def _invalidate(self, handle: NativeHandle) -> None:
        """Release listener: drop every registration of a handle being released."""
        with self._lock:
            pending = [
                r
                for r in self._registrations.values()
                if r.source is handle or r.source.address == handle.address
            ]
            for registration in pending:
                self._deactivate(registration)
        if pending:
            log.debug(
                "Invalidated signal registrations",
                extra={"callable": handle.info.qualified_name, "count": len(pending)},
            )

    def clear(self) -> None:
        """Invalidate everything (engine shutdown)."""
        with self._lock:
            for registration in list(self._registrations.values()):
                try:
                    self._deactivate(registration)
                except GirError:
                    log.error("Failed to disconnect signal at shutdown", exc_info=True)


def _default_return(signal: SignalInfo) -> Any:
    descriptor = signal.return_type
    if descriptor.is_void:
        return None
    if descriptor.kind is TypeKind.PRIMITIVE and not descriptor.is_pointer:
        if descriptor.tag is PrimitiveTag.BOOLEAN:
            return False
        if descriptor.tag in (PrimitiveTag.FLOAT, PrimitiveTag.DOUBLE):
            return 0.0
        return 0
    if descriptor.kind is TypeKind.ENUM:
        return 0
    return None
