"""
ValueMarshaller - converts single values between host and native form.

``to_native(value, descriptor, frame)`` turns a Python value into what
ctypes passes for that descriptor (an ``int`` address, an ``int`` or a
``float``); ``to_host(native, descriptor)`` is the reverse. Dispatch is an
exhaustive match over ``TypeKind``; conversions are strict:

- integers must fit the native range; floats are accepted for integer
  slots only when they have no fractional part
- strings must be ``str`` (``bytes`` also for filenames) without NUL
- enums must be members of the value set, flags must not set unknown bits
- ``None`` is accepted only for nullable descriptors

Objects and structs are delegated to a ``HandleBridge`` (the wrapper
table), callbacks to a ``CallbackBridge`` (the trampoline factory); the
engine wires both after construction.
"""

from __future__ import annotations

import ctypes
import enum
import math
import operator
import os
import threading
from collections.abc import Callable, Sequence
from typing import Any, Protocol

from ..exceptions import (
    InvalidEnumValueError,
    MemberAccessError,
    MetadataError,
    TypeMismatchError,
    UnsupportedSignatureError,
)
from ..types import (
    CallbackInfo,
    EnumInfo,
    FieldInfo,
    InterfaceInfo,
    ObjectInfo,
    PrimitiveTag,
    Scope,
    StructInfo,
    Transfer,
    TypeDescriptor,
    TypeKind,
)
from ._native import (
    FLT_MAX,
    UNICHAR_MAX,
    CAllocator,
    default_allocator,
    integer_range,
    read_cstring,
    read_slot,
    scalar_ctype,
    write_slot,
)
from .frame import CallFrame, Site

_DEFAULT_SITE = Site()


class HandleBridge(Protocol):
    """Turns addresses into wrappers and back."""

    def wrap(
        self, address: int, descriptor: TypeDescriptor, info: StructInfo | ObjectInfo
    ) -> Any: ...

    def unwrap(
        self,
        value: Any,
        descriptor: TypeDescriptor,
        info: StructInfo | ObjectInfo,
        site: Site,
        frame: CallFrame | None = None,
    ) -> int: ...

    def adopt_buffer(self, address: int, info: StructInfo) -> Any: ...

    def discard(self, value: Any) -> None: ...


class CallbackBridge(Protocol):
    """Turns host callables into native function pointers and back."""

    def to_native(
        self, value: Callable[..., Any], info: CallbackInfo, scope: Scope, frame: CallFrame
    ) -> Any: ...

    def to_host(self, address: int, info: CallbackInfo) -> Callable[..., Any]: ...


class ValueMarshaller:
    """
    Bidirectional single-value converter.

    Parameters
    ----------
    interfaces : callable
        Resolves a qualified interface name to its ``*Info``.
    allocator : CAllocator, optional
        Allocator for memory whose ownership crosses the boundary.
    """

    def __init__(
        self,
        interfaces: Callable[[str], InterfaceInfo],
        allocator: CAllocator | None = None,
    ):
        self._interfaces = interfaces
        self.allocator = allocator or default_allocator()
        self.handles: HandleBridge | None = None
        self.callbacks: CallbackBridge | None = None
        self._enum_classes: dict[str, type[enum.IntEnum] | type[enum.IntFlag]] = {}
        self._enum_lock = threading.Lock()

    # =========================================================================
    # Metadata helpers
    # =========================================================================

    def lookup(self, name: str) -> InterfaceInfo:
        """Resolve a qualified interface name."""
        return self._interfaces(name)

    def interface(self, descriptor: TypeDescriptor) -> InterfaceInfo:
        assert descriptor.interface is not None
        return self._interfaces(descriptor.interface)

    def _expect(self, descriptor: TypeDescriptor, kind: type) -> Any:
        info = self.interface(descriptor)
        if not isinstance(info, kind):
            raise MetadataError(
                f"Interface {descriptor.interface} is a {type(info).__name__}, "
                f"expected {kind.__name__}",
                details={"interface": descriptor.interface},
            )
        return info

    def ctype_of(self, descriptor: TypeDescriptor) -> Any:
        """ctypes type for ``descriptor`` (None for ``void`` or by-value structs)."""
        storage = None
        if descriptor.kind is TypeKind.ENUM and not descriptor.is_pointer:
            storage = self._expect(descriptor, EnumInfo).storage
        return scalar_ctype(descriptor, storage)

    def enum_class(self, info: EnumInfo) -> type[enum.IntEnum] | type[enum.IntFlag]:
        """Python enum class generated from ``info`` (cached)."""
        cls = self._enum_classes.get(info.qualified_name)
        if cls is not None:
            return cls
        with self._enum_lock:
            cls = self._enum_classes.get(info.qualified_name)
            if cls is None:
                members = {name.upper(): value for name, value in info.values}
                base = enum.IntFlag if info.is_flags else enum.IntEnum
                cls = base(info.name, members)
                cls.__module__ = f"girbridge.{info.namespace}"
                self._enum_classes[info.qualified_name] = cls
        return cls

    # =========================================================================
    # Host -> native
    # =========================================================================

    def to_native(
        self,
        value: Any,
        descriptor: TypeDescriptor,
        frame: CallFrame,
        site: Site = _DEFAULT_SITE,
        scope: Scope = Scope.CALL,
    ) -> Any:
        """
        Convert ``value`` for ``descriptor``.

        Temporary buffers (transfer ``none``) are kept alive by ``frame``;
        memory handed over with transfer ``full`` comes from the allocator
        and belongs to the callee once ``frame`` is committed. Until then
        closing the frame gives it back.
        """
        kind = descriptor.kind
        if value is None and (descriptor.is_pointer or kind is TypeKind.VOID):
            if descriptor.is_nullable or kind is TypeKind.VOID:
                return 0
            raise TypeMismatchError(
                f"{site} is not nullable, got None",
                details=site.details(expected=descriptor.describe()),
            )

        if kind is TypeKind.PRIMITIVE:
            if descriptor.is_pointer:
                return self._pointer_to_native(value, descriptor, site)
            return self._primitive_to_native(value, descriptor, site)
        if kind is TypeKind.STRING:
            return self._string_to_native(value, descriptor, frame, site)
        if kind is TypeKind.ARRAY:
            return self._array_to_native(value, descriptor, frame, site)
        if kind is TypeKind.STRUCT:
            info = self._expect(descriptor, StructInfo)
            return self._handles().unwrap(value, descriptor, info, site, frame)
        if kind is TypeKind.OBJECT:
            info = self._expect(descriptor, ObjectInfo)
            return self._handles().unwrap(value, descriptor, info, site, frame)
        if kind is TypeKind.ENUM:
            return self._enum_to_native(value, descriptor, site)
        if kind is TypeKind.CALLBACK:
            return self.callback_to_native(value, descriptor, frame, site, scope).address
        if kind is TypeKind.VOID:
            if descriptor.is_pointer:
                return self._pointer_to_native(value, descriptor, site)
            raise TypeMismatchError(
                f"{site} is void and takes no value",
                details=site.details(expected="void"),
            )
        raise UnsupportedSignatureError(f"Unknown type kind {kind!r}")  # pragma: no cover

    def callback_to_native(
        self,
        value: Any,
        descriptor: TypeDescriptor,
        frame: CallFrame,
        site: Site = _DEFAULT_SITE,
        scope: Scope = Scope.CALL,
    ) -> Any:
        """Return the trampoline (or native function) standing in for ``value``."""
        if not callable(value):
            raise TypeMismatchError(
                f"{site} expects a callable, got {type(value).__name__}",
                details=site.details(expected=descriptor.describe()),
            )
        if self.callbacks is None:
            raise UnsupportedSignatureError("No callback bridge configured")
        info = self._expect(descriptor, CallbackInfo)
        return self.callbacks.to_native(value, info, scope, frame)

    def _handles(self) -> HandleBridge:
        if self.handles is None:
            raise UnsupportedSignatureError("No handle bridge configured")
        return self.handles

    def _mismatch(
        self, value: Any, descriptor: TypeDescriptor, site: Site, why: str = ""
    ) -> TypeMismatchError:
        got = type(value).__name__
        message = f"{site} expects {descriptor.describe()}, got {got}"
        if why:
            message = f"{message} ({why})"
        return TypeMismatchError(
            message, details=site.details(expected=descriptor.describe(), got=got)
        )

    def _pointer_to_native(self, value: Any, descriptor: TypeDescriptor, site: Site) -> int:
        address = getattr(value, "address", value)
        if isinstance(address, bool) or not isinstance(address, int):
            raise self._mismatch(value, descriptor, site)
        if address < 0:
            raise self._mismatch(value, descriptor, site, "negative address")
        return address

    def _primitive_to_native(self, value: Any, descriptor: TypeDescriptor, site: Site) -> Any:
        tag = descriptor.tag
        if tag is PrimitiveTag.BOOLEAN:
            if isinstance(value, bool):
                return int(value)
            if isinstance(value, int) and value in (0, 1):
                return value
            raise self._mismatch(value, descriptor, site)
        if tag in (PrimitiveTag.FLOAT, PrimitiveTag.DOUBLE):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise self._mismatch(value, descriptor, site)
            try:
                number = float(value)
            except OverflowError:
                raise self._mismatch(value, descriptor, site, "out of range") from None
            if tag is PrimitiveTag.FLOAT and math.isfinite(number) and abs(number) > FLT_MAX:
                raise self._mismatch(value, descriptor, site, "out of range for float")
            return number
        if tag is PrimitiveTag.UNICHAR:
            if isinstance(value, str):
                if len(value) != 1:
                    raise self._mismatch(value, descriptor, site, "expected one character")
                return ord(value)
            if isinstance(value, int) and not isinstance(value, bool) and 0 <= value <= UNICHAR_MAX:
                return value
            raise self._mismatch(value, descriptor, site)
        assert tag is not None
        return self._coerce_int(value, tag, descriptor, site)

    def _coerce_int(
        self, value: Any, tag: PrimitiveTag, descriptor: TypeDescriptor, site: Site
    ) -> int:
        if isinstance(value, float):
            if not value.is_integer():
                raise self._mismatch(value, descriptor, site, f"{value!r} is not integral")
            number = int(value)
        else:
            try:
                number = operator.index(value)
            except TypeError:
                raise self._mismatch(value, descriptor, site) from None
        low, high = integer_range(tag)
        if not low <= number <= high:
            raise TypeMismatchError(
                f"{site} value {number} is out of range for {tag.value} [{low}, {high}]",
                details=site.details(expected=tag.value, value=number),
            )
        return number

    def _string_to_native(
        self, value: Any, descriptor: TypeDescriptor, frame: CallFrame, site: Site
    ) -> int:
        if isinstance(value, str):
            data = os.fsencode(value) if descriptor.is_filename else value.encode("utf-8")
        elif isinstance(value, bytes) and descriptor.is_filename:
            data = value
        else:
            raise self._mismatch(value, descriptor, site)
        if b"\x00" in data:
            raise self._mismatch(value, descriptor, site, "embedded NUL")
        if descriptor.transfer is Transfer.NONE:
            buffer = frame.keep(ctypes.create_string_buffer(data))
            return ctypes.addressof(buffer)
        address = self.allocator.dup_bytes(data)
        frame.undo(lambda: self.allocator.free(address))
        return address

    def _array_to_native(
        self, value: Any, descriptor: TypeDescriptor, frame: CallFrame, site: Site
    ) -> int:
        if isinstance(value, str) or not isinstance(value, Sequence):
            raise self._mismatch(value, descriptor, site)
        element = self._element_descriptor(descriptor)
        if isinstance(value, (bytes, bytearray)) and element.tag not in (
            PrimitiveTag.UINT8,
            PrimitiveTag.INT8,
        ):
            raise self._mismatch(value, descriptor, site)
        items = list(value)
        if descriptor.fixed_size is not None and len(items) != descriptor.fixed_size:
            raise self._mismatch(
                value, descriptor, site, f"expected exactly {descriptor.fixed_size} elements"
            )
        ctype = self._element_ctype(element, descriptor)
        size = ctypes.sizeof(ctype)
        count = max(len(items) + (1 if descriptor.zero_terminated else 0), 1)

        natives = [
            self.to_native(item, element, frame, site.element(i)) for i, item in enumerate(items)
        ]
        if descriptor.transfer is Transfer.NONE:
            address = ctypes.addressof(frame.keep((ctype * count)()))
        else:
            address = self.allocator.alloc(size * count)
            frame.undo(lambda: self.allocator.free(address))
        for i, native in enumerate(natives):
            write_slot(address + i * size, ctype, native)
        return address

    def _element_descriptor(self, descriptor: TypeDescriptor) -> TypeDescriptor:
        assert descriptor.element_type is not None
        transfer = Transfer.FULL if descriptor.transfer is Transfer.FULL else Transfer.NONE
        return descriptor.element_type.with_transfer(transfer)

    def _element_ctype(self, element: TypeDescriptor, array: TypeDescriptor) -> Any:
        ctype = self.ctype_of(element)
        if ctype is None:
            raise UnsupportedSignatureError(
                f"Arrays of {element.describe()} cannot be marshalled",
                details={"type": array.describe()},
            )
        return ctype

    def _enum_to_native(self, value: Any, descriptor: TypeDescriptor, site: Site) -> int:
        info = self._expect(descriptor, EnumInfo)
        if isinstance(value, str):
            members = self.enum_class(info).__members__
            member = members.get(value.upper())
            if member is None:
                raise InvalidEnumValueError(
                    f"{site}: {value!r} is not a member of {info.qualified_name}",
                    details=site.details(enum=info.qualified_name, value=value),
                )
            return int(member)
        if isinstance(value, bool) or not isinstance(value, int):
            raise self._mismatch(value, descriptor, site)
        number = int(value)
        if not info.accepts(number):
            raise InvalidEnumValueError(
                f"{site}: {number} is not a valid {info.qualified_name} value",
                details=site.details(enum=info.qualified_name, value=number),
            )
        low, high = integer_range(info.storage)
        if not low <= number <= high:
            raise self._mismatch(value, descriptor, site, "out of range for enum storage")
        return number

    # =========================================================================
    # Native -> host
    # =========================================================================

    def to_host(
        self,
        native: Any,
        descriptor: TypeDescriptor,
        length: int | None = None,
        site: Site = _DEFAULT_SITE,
    ) -> Any:
        """
        Convert ``native`` back to a host value.

        ``length`` gives the element count for arrays sized by a separate
        parameter. Memory received with transfer ``full`` (strings, array
        containers) is freed once converted; objects and structs are
        wrapped and their ownership recorded by the handle bridge.
        """
        kind = descriptor.kind
        if kind is TypeKind.VOID:
            return (native or None) if descriptor.is_pointer else None
        if kind is TypeKind.PRIMITIVE:
            if descriptor.is_pointer:
                return native or None
            return self._primitive_to_host(native, descriptor)
        if kind is TypeKind.ENUM:
            return self._enum_to_host(native, descriptor, site)

        # Pointer kinds from here on
        address = native or 0
        if kind is TypeKind.STRING:
            return self._string_to_host(address, descriptor, site)
        if kind is TypeKind.ARRAY:
            return self._array_to_host(address, descriptor, length, site)
        if not address:
            return None
        if kind is TypeKind.STRUCT:
            info = self._expect(descriptor, StructInfo)
            return self._handles().wrap(address, descriptor, info)
        if kind is TypeKind.OBJECT:
            info = self._expect(descriptor, ObjectInfo)
            return self._handles().wrap(address, descriptor, info)
        if kind is TypeKind.CALLBACK:
            if self.callbacks is None:
                raise UnsupportedSignatureError("No callback bridge configured")
            return self.callbacks.to_host(address, self._expect(descriptor, CallbackInfo))
        raise UnsupportedSignatureError(f"Unknown type kind {kind!r}")  # pragma: no cover

    def _primitive_to_host(self, native: Any, descriptor: TypeDescriptor) -> Any:
        tag = descriptor.tag
        if tag is PrimitiveTag.BOOLEAN:
            return bool(native)
        if tag in (PrimitiveTag.FLOAT, PrimitiveTag.DOUBLE):
            return float(native)
        if tag is PrimitiveTag.UNICHAR:
            return chr(native)
        return int(native)

    def _enum_to_host(self, native: Any, descriptor: TypeDescriptor, site: Site) -> Any:
        info = self._expect(descriptor, EnumInfo)
        number = int(native)
        if not info.accepts(number):
            raise InvalidEnumValueError(
                f"{site}: native value {number} is not a valid {info.qualified_name} value",
                details=site.details(enum=info.qualified_name, value=number),
            )
        return self.enum_class(info)(number)

    def _string_to_host(
        self, address: int, descriptor: TypeDescriptor, site: Site
    ) -> str | None:
        if not address:
            return None
        data = read_cstring(address)
        if descriptor.transfer is not Transfer.NONE:
            self.allocator.free(address)
        if descriptor.is_filename:
            return os.fsdecode(data)
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise TypeMismatchError(
                f"{site} is not valid UTF-8 ({e.reason} at byte {e.start})",
                details=site.details(expected="utf8", got="bytes"),
            ) from None

    def _array_to_host(
        self, address: int, descriptor: TypeDescriptor, length: int | None, site: Site
    ) -> list[Any] | None:
        if not address:
            return None if descriptor.is_nullable else []
        element = self._element_descriptor(descriptor)
        ctype = self._element_ctype(element, descriptor)
        size = ctypes.sizeof(ctype)
        if length is None:
            if descriptor.fixed_size is not None:
                length = descriptor.fixed_size
            elif descriptor.zero_terminated:
                length = 0
                while read_slot(address + length * size, ctype):
                    length += 1
            else:
                raise UnsupportedSignatureError(
                    f"{site}: array has no length",
                    details=site.details(type=descriptor.describe()),
                )
        items = [
            self.to_host(read_slot(address + i * size, ctype), element, site=site.element(i))
            for i in range(length)
        ]
        if descriptor.transfer is not Transfer.NONE:
            self.allocator.free(address)
        return items

    # =========================================================================
    # Memory
    # =========================================================================

    def read(self, address: int, descriptor: TypeDescriptor) -> Any:
        """Read the native value of ``descriptor`` stored at ``address``."""
        return read_slot(address, self.ctype_of(descriptor))

    def write(self, address: int, descriptor: TypeDescriptor, native: Any) -> None:
        write_slot(address, self.ctype_of(descriptor), native)

    def read_field(self, base: int, field: FieldInfo, owner: str) -> Any:
        site = Site(owner, field.name)
        if not field.readable:
            raise MemberAccessError(
                f"Field {owner}.{field.name} is not readable", details=site.details()
            )
        self._check_field(field, owner)
        descriptor = field.type.with_transfer(Transfer.NONE)
        return self.to_host(self.read(base + field.offset, descriptor), descriptor, site=site)

    def write_field(self, base: int, field: FieldInfo, value: Any, owner: str) -> None:
        site = Site(owner, field.name)
        if not field.writable:
            raise MemberAccessError(
                f"Field {owner}.{field.name} is not writable", details=site.details()
            )
        self._check_field(field, owner)
        kind = field.type.kind
        if kind in (TypeKind.STRING, TypeKind.ARRAY):
            raise UnsupportedSignatureError(
                f"Field {owner}.{field.name} of type {field.type.describe()} cannot be written",
                details=site.details(),
            )
        descriptor = field.type.with_transfer(Transfer.NONE)
        with CallFrame(owner) as frame:
            native = self.to_native(value, descriptor, frame, site, scope=Scope.FOREVER)
            self.write(base + field.offset, descriptor, native)
            frame.commit()

    def _check_field(self, field: FieldInfo, owner: str) -> None:
        if self.ctype_of(field.type) is None:
            raise UnsupportedSignatureError(
                f"Field {owner}.{field.name} holds an embedded {field.type.describe()}",
                details={"callable": owner, "parameter": field.name},
            )
