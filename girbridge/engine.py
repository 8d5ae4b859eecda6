"""
Engine - the host-facing entry point.

Wires one ValueMarshaller, PlanCache, NativeInvoker, OwnershipBridge,
ObjectTable and SignalDispatcher around a metadata provider, all sharing a
single engine-wide lock, and exposes the operations the host layer builds
on:

- ``invoke_by_name(namespace, name, args)``
- ``wrap(address, type_name, transfer)``
- ``get_property`` / ``set_property``
- ``connect_signal`` / ``disconnect_signal``

Usage::

    from girbridge import Engine, EngineConfig

    with Engine(config=EngineConfig.from_env()) as engine:
        engine.repository.require("Demo", "1.0")
        total = engine.invoke_by_name("Demo", "sum", [[1, 2, 3]])

Plan cache, identity table and trampolines are populated on first use and
cleared only by ``close()``.
"""

from __future__ import annotations

import ctypes
import threading
from collections.abc import Callable, Iterator, Sequence
from typing import Any

from ._logging import scoped_logger
from .config import EngineConfig
from .exceptions import (
    ArityMismatchError,
    GirError,
    MemberAccessError,
    StateError,
    TypeMismatchError,
    UnknownMemberError,
)
from .invoke import ArgumentPlan, NativeInvoker, PlanCache
from .marshal import CAllocator, Site, ValueMarshaller, default_allocator
from .objects import NativeWrapper, ObjectTable, ObjectWrapper, StructWrapper
from .ownership import OwnershipBridge
from .repository import MetadataProvider, Repository
from .signals import SignalDispatcher
from .types import (
    CallableSignature,
    Direction,
    InterfaceInfo,
    ObjectInfo,
    PropertyInfo,
    SignalInfo,
    StructInfo,
    Transfer,
    TypeDescriptor,
    qualify,
    split_qualified,
)

log = scoped_logger("invoke")

_FREE_FUNC = ctypes.CFUNCTYPE(None, ctypes.c_void_p)


class Engine:
    """
    Generic marshalling and invocation engine.

    Parameters
    ----------
    provider : MetadataProvider, optional
        Metadata source. Defaults to a ``Repository`` using the config's
        search paths.
    config : EngineConfig, optional
        Defaults to ``EngineConfig.from_env()``.
    allocator : CAllocator, optional
        Allocator for memory whose ownership crosses the boundary.
    """

    def __init__(
        self,
        provider: MetadataProvider | None = None,
        config: EngineConfig | None = None,
        allocator: CAllocator | None = None,
    ):
        self.config = config or EngineConfig.from_env()
        self.provider: MetadataProvider = provider or Repository(
            self.config.typelib_path, self.config.library_path
        )
        self.allocator = allocator or default_allocator()
        self._lock = threading.RLock()
        self._closed = False

        self.marshaller = ValueMarshaller(self.interface, self.allocator)
        self.plans = PlanCache(self.interface, self._lock)
        self.invoker = NativeInvoker(self.marshaller, self.plans, self._lock)
        self.ownership = OwnershipBridge(
            self.provider.resolve_symbol,
            self.interface,
            self.allocator,
            default_ref=self.config.object_ref,
            default_unref=self.config.object_unref,
            lock=self._lock,
        )
        self.objects = ObjectTable(self, self.ownership, self.interface, self._lock)
        self.signals = SignalDispatcher(
            self.invoker,
            self.ownership,
            self.find_signal,
            self.resolve,
            connect_symbol=self.config.signal_connect,
            disconnect_symbol=self.config.signal_disconnect,
            lock=self._lock,
        )
        self.marshaller.handles = self.objects
        self.marshaller.callbacks = self.invoker.trampolines
        self.invoker.error_free = self._bind_error_free()

    @property
    def repository(self) -> Repository:
        """The provider, when it is the in-tree ``Repository``."""
        if not isinstance(self.provider, Repository):
            raise TypeError(f"Engine provider is a {type(self.provider).__name__}")
        return self.provider

    @property
    def closed(self) -> bool:
        return self._closed

    # =========================================================================
    # Metadata
    # =========================================================================

    def interface(self, qualified: str) -> InterfaceInfo:
        """Info for a qualified interface name (``"Namespace.Name"``)."""
        return self.provider.describe_interface(*split_qualified(qualified))

    def resolve(self, qualified: str) -> int:
        """Address of a qualified symbol (``"Namespace.symbol"``)."""
        return self.provider.resolve_symbol(*split_qualified(qualified))

    def plan_for(self, namespace: str, name: str) -> ArgumentPlan:
        """The (cached) argument plan of a named callable."""
        return self.plans.get(self.provider.describe_callable(namespace, name))

    def _bind_error_free(self) -> Callable[[int], None] | None:
        try:
            address = self.resolve(self.config.error_free)
        except GirError:
            log.debug(
                "Error free function unavailable, using allocator",
                extra={"callable": self.config.error_free},
            )
            return None
        return _FREE_FUNC(address)

    def _address_of(self, signature: CallableSignature, namespace: str) -> int:
        return self.provider.resolve_symbol(
            signature.namespace or namespace, signature.symbol or signature.name
        )

    # =========================================================================
    # Calls
    # =========================================================================

    def invoke_by_name(self, namespace: str, name: str, args: Sequence[Any] = ()) -> Any:
        """
        Call a function, constructor (``"Type.new"``) or method (``"Type.method"``).

        For methods the first host argument is the instance wrapper.

        Raises
        ------
        UnknownMemberError
            If the callable or its symbol does not exist.
        ArityMismatchError, TypeMismatchError
            If ``args`` do not fit the host-facing signature.
        UnsupportedSignatureError
            If the signature cannot be marshalled.
        """
        self._check_open()
        signature = self.provider.describe_callable(namespace, name)
        args = tuple(args)
        instance = 0
        if signature.is_method:
            if not args:
                raise ArityMismatchError(
                    f"{signature.qualified_name}() is a method and needs an instance argument",
                    details={"callable": signature.qualified_name, "expected": 1, "got": 0},
                )
            instance = self._instance_address(args[0], signature)
            args = args[1:]
        plan = self.plans.get(signature)
        address = self._address_of(signature, namespace)
        return self.invoker.invoke(address, plan, args, instance=instance)

    def invoke_method(self, wrapper: NativeWrapper, name: str, args: Sequence[Any] = ()) -> Any:
        """Call instance method ``name`` (searched up the parent chain) on ``wrapper``."""
        self._check_open()
        self.ownership.check_live(wrapper.handle)
        signature = self._find_method(wrapper.info, name)
        plan = self.plans.get(signature)
        return self.invoker.invoke(
            self._address_of(signature, wrapper.info.namespace),
            plan,
            args,
            instance=wrapper.address,
        )

    def _find_method(self, info: StructInfo | ObjectInfo, name: str) -> CallableSignature:
        for current in self._lineage(info):
            method = current.find_method(name)
            if method is not None and method.is_method:
                return method
        raise UnknownMemberError(
            f"{info.qualified_name} has no method {name!r}",
            details={"callable": f"{info.qualified_name}.{name}"},
        )

    def _instance_address(self, value: Any, signature: CallableSignature) -> int:
        site = Site(signature.qualified_name, "self")
        if not isinstance(value, NativeWrapper):
            raise TypeMismatchError(
                f"{site} expects a wrapper, got {type(value).__name__}",
                details=site.details(got=type(value).__name__),
            )
        self.ownership.check_live(value.handle)
        if signature.namespace and signature.container:
            expected = qualify(signature.namespace, signature.container)
            if not self.objects.is_subtype(value.info, expected):
                raise TypeMismatchError(
                    f"{site} expects {expected}, got {value.type_name}",
                    details=site.details(expected=expected, got=value.type_name),
                )
        return value.address

    # =========================================================================
    # Wrappers
    # =========================================================================

    def wrap(
        self, address: int, type_name: str, transfer: Transfer = Transfer.NONE
    ) -> NativeWrapper:
        """
        Wrapper for a native pointer of type ``type_name``.

        Returns the existing wrapper when the address is already known.
        ``transfer`` says whether the host now owns a reference.
        """
        self._check_open()
        if not address:
            raise TypeMismatchError(
                f"Cannot wrap a NULL {type_name}", details={"callable": type_name}
            )
        info = self.interface(type_name)
        if isinstance(info, ObjectInfo):
            descriptor = TypeDescriptor.object(info.qualified_name, transfer)
        elif isinstance(info, StructInfo):
            descriptor = TypeDescriptor.struct(info.qualified_name, transfer)
        else:
            raise TypeMismatchError(
                f"{type_name} is not an object or struct type", details={"callable": type_name}
            )
        return self.objects.wrap(address, descriptor, info)

    def allocate(self, type_name: str) -> StructWrapper:
        """A zero-filled, host-owned instance of struct ``type_name``."""
        self._check_open()
        info = self.interface(type_name)
        if not isinstance(info, StructInfo):
            raise TypeMismatchError(
                f"{type_name} is not a struct type", details={"callable": type_name}
            )
        return self.objects.adopt_buffer(self.allocator.alloc(info.size), info)

    def _lineage(self, info: StructInfo | ObjectInfo) -> Iterator[Any]:
        current: Any = info
        while current is not None:
            yield current
            parent = getattr(current, "parent", None)
            current = self.interface(qualify(current.namespace, parent)) if parent else None

    # =========================================================================
    # Properties
    # =========================================================================

    def find_property(self, info: ObjectInfo, name: str) -> tuple[ObjectInfo, PropertyInfo]:
        for current in self._lineage(info):
            prop = current.find_property(name)
            if prop is not None:
                return current, prop
        raise UnknownMemberError(
            f"{info.qualified_name} has no property {name!r}",
            details={"callable": info.qualified_name, "property": name},
        )

    def get_property(self, wrapper: ObjectWrapper, name: str) -> Any:
        """
        Read property ``name``.

        Raises
        ------
        UnknownMemberError
            If the object type has no such property.
        MemberAccessError
            If the property is not readable.
        StateError
            If the wrapper has been released.
        """
        self._check_open()
        self.ownership.check_live(wrapper.handle)
        owner, prop = self.find_property(wrapper.info, name)
        if not prop.readable:
            raise MemberAccessError(
                f"Property {owner.qualified_name}:{name} is not readable",
                details={"callable": owner.qualified_name, "property": name},
            )
        if prop.getter:
            return self.invoke_method(wrapper, prop.getter)
        return self.invoker.call_accessor(
            self.resolve(self.config.property_get),
            wrapper.address,
            prop.name,
            prop.type.with_transfer(Transfer.FULL),
            Direction.OUT,
            site=Site(f"{owner.qualified_name}:{prop.name}", "value"),
        )

    def set_property(self, wrapper: ObjectWrapper, name: str, value: Any) -> None:
        """Write property ``name`` (``MemberAccessError`` if not writable)."""
        self._check_open()
        self.ownership.check_live(wrapper.handle)
        owner, prop = self.find_property(wrapper.info, name)
        if not prop.writable:
            raise MemberAccessError(
                f"Property {owner.qualified_name}:{name} is not writable",
                details={"callable": owner.qualified_name, "property": name},
            )
        if prop.setter:
            self.invoke_method(wrapper, prop.setter, (value,))
            return
        self.invoker.call_accessor(
            self.resolve(self.config.property_set),
            wrapper.address,
            prop.name,
            prop.type,
            Direction.IN,
            value,
            site=Site(f"{owner.qualified_name}:{prop.name}", "value"),
        )

    # =========================================================================
    # Signals
    # =========================================================================

    def find_signal(self, info: ObjectInfo, name: str) -> tuple[ObjectInfo, SignalInfo]:
        for current in self._lineage(info):
            signal = current.find_signal(name)
            if signal is not None:
                return current, signal
        raise UnknownMemberError(
            f"{info.qualified_name} has no signal {name!r}",
            details={"callable": info.qualified_name, "signal": name},
        )

    def connect_signal(
        self, wrapper: ObjectWrapper, signal: str, callback: Callable[..., Any]
    ) -> int:
        """Connect ``callback`` to ``signal``; returns a registration id."""
        self._check_open()
        return self.signals.connect(wrapper, signal, callback)

    def disconnect_signal(self, registration_id: int) -> None:
        """Disconnect a registration. Idempotent for ids this engine issued."""
        self.signals.disconnect(registration_id)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def _check_open(self) -> None:
        if self._closed:
            raise StateError("Engine has been closed", details={})

    def close(self) -> None:
        """Disconnect signals, release owned handles and clear every cache. Idempotent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self.signals.clear()
            self.ownership.shutdown()
            self.objects.clear()
            self.invoker.trampolines.clear()
            self.plans.clear()
        log.debug("Engine closed")

    def __enter__(self) -> Engine:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
