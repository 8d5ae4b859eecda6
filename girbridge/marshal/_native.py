"""
ctypes mapping for native types and the C runtime allocator.

This is the only module that knows how descriptors map onto ctypes
types. Every pointer kind travels as ``c_void_p`` (a Python ``int``,
with 0 for NULL); scalars use the matching fixed-width ctypes type.

Memory handed to or received from native code with transfer ``full`` is
allocated and freed with the C runtime ``malloc``/``free`` (the GLib
allocator delegates to it).
"""

from __future__ import annotations

import ctypes
import ctypes.util
import sys
import threading
from typing import Any

from ..exceptions import LoadError
from ..types import PrimitiveTag, TypeDescriptor, TypeKind

# =============================================================================
# Type mapping
# =============================================================================

PRIMITIVE_CTYPES: dict[PrimitiveTag, Any] = {
    PrimitiveTag.BOOLEAN: ctypes.c_int,  # gboolean is a C int
    PrimitiveTag.INT8: ctypes.c_int8,
    PrimitiveTag.UINT8: ctypes.c_uint8,
    PrimitiveTag.INT16: ctypes.c_int16,
    PrimitiveTag.UINT16: ctypes.c_uint16,
    PrimitiveTag.INT32: ctypes.c_int32,
    PrimitiveTag.UINT32: ctypes.c_uint32,
    PrimitiveTag.INT64: ctypes.c_int64,
    PrimitiveTag.UINT64: ctypes.c_uint64,
    PrimitiveTag.FLOAT: ctypes.c_float,
    PrimitiveTag.DOUBLE: ctypes.c_double,
    PrimitiveTag.GTYPE: ctypes.c_size_t,
    PrimitiveTag.UNICHAR: ctypes.c_uint32,
}

_UNSIGNED = frozenset(
    {
        PrimitiveTag.UINT8,
        PrimitiveTag.UINT16,
        PrimitiveTag.UINT32,
        PrimitiveTag.UINT64,
        PrimitiveTag.GTYPE,
    }
)

FLT_MAX = 3.4028234663852886e38
UNICHAR_MAX = 0x10FFFF
POINTER_SIZE = ctypes.sizeof(ctypes.c_void_p)


def integer_range(tag: PrimitiveTag) -> tuple[int, int]:
    """Inclusive ``(min, max)`` of an integer tag."""
    bits = ctypes.sizeof(PRIMITIVE_CTYPES[tag]) * 8
    if tag in _UNSIGNED:
        return 0, (1 << bits) - 1
    return -(1 << (bits - 1)), (1 << (bits - 1)) - 1


def scalar_ctype(descriptor: TypeDescriptor, enum_storage: PrimitiveTag | None = None) -> Any:
    """
    ctypes type carrying ``descriptor`` as an argument, return value or slot.

    Returns None for a plain ``void`` (only meaningful as a return type).
    ``enum_storage`` must be given for enum descriptors.
    """
    if descriptor.is_pointer:
        return ctypes.c_void_p
    kind = descriptor.kind
    if kind is TypeKind.PRIMITIVE:
        assert descriptor.tag is not None
        return PRIMITIVE_CTYPES[descriptor.tag]
    if kind is TypeKind.ENUM:
        return PRIMITIVE_CTYPES[enum_storage or PrimitiveTag.INT32]
    if kind is TypeKind.VOID:
        return None
    # By-value structs have no scalar representation
    return None


def vararg_ctype(ctype: Any) -> Any:
    """
    ctypes type a ``ctype`` value is passed as through C ``...``.

    Default argument promotions apply: ``float`` becomes ``double`` and
    integers narrower than ``int`` become ``int``.
    """
    if ctype is ctypes.c_float:
        return ctypes.c_double
    if getattr(ctype, "_type_", None) in ("b", "B", "h", "H"):
        return ctypes.c_int
    return ctype


# =============================================================================
# GError
# =============================================================================


class GErrorStruct(ctypes.Structure):
    """Layout of a ``GError``."""

    _fields_ = [
        ("domain", ctypes.c_uint32),
        ("code", ctypes.c_int),
        ("message", ctypes.c_char_p),
    ]


DestroyNotify = ctypes.CFUNCTYPE(None, ctypes.c_void_p)

# =============================================================================
# Allocator
# =============================================================================


class CAllocator:
    """C runtime ``calloc``/``free`` accessed through ctypes."""

    def __init__(self, library: str | None = None):
        self._library_name = library
        self._lib: ctypes.CDLL | None = None
        self._lock = threading.Lock()

    def _load(self) -> ctypes.CDLL:
        if self._lib is not None:
            return self._lib
        with self._lock:
            if self._lib is None:
                name = self._library_name
                if name is None:
                    name = "msvcrt" if sys.platform == "win32" else ctypes.util.find_library("c")
                try:
                    lib = ctypes.CDLL(name)
                except OSError as e:
                    raise LoadError(
                        f"Cannot open the C runtime library: {e}",
                        details={"library": name},
                    ) from e
                lib.calloc.restype = ctypes.c_void_p
                lib.calloc.argtypes = [ctypes.c_size_t, ctypes.c_size_t]
                lib.free.restype = None
                lib.free.argtypes = [ctypes.c_void_p]
                self._lib = lib
        return self._lib

    @property
    def free_address(self) -> int:
        """Address of ``free`` itself, for passing as a destroy function."""
        return ctypes.cast(self._load().free, ctypes.c_void_p).value or 0

    def alloc(self, size: int) -> int:
        """Allocate ``size`` zero-filled bytes."""
        address = self._load().calloc(1, max(size, 1))
        if not address:
            raise MemoryError(f"calloc({size}) failed")
        return address

    def free(self, address: int) -> None:
        if address:
            self._load().free(address)

    def dup_bytes(self, data: bytes) -> int:
        """Copy ``data`` into a new NUL-terminated buffer."""
        address = self.alloc(len(data) + 1)
        ctypes.memmove(address, data, len(data))
        return address


_default_allocator: CAllocator | None = None


def default_allocator() -> CAllocator:
    global _default_allocator
    if _default_allocator is None:
        _default_allocator = CAllocator()
    return _default_allocator


# =============================================================================
# Memory access
# =============================================================================


def read_slot(address: int, ctype: Any) -> Any:
    """Read one value of ``ctype`` stored at ``address``."""
    value = ctype.from_address(address).value
    if ctype is ctypes.c_void_p:
        return value or 0
    return value


def write_slot(address: int, ctype: Any, value: Any) -> None:
    """Store ``value`` as a ``ctype`` at ``address``."""
    ctype.from_address(address).value = value


def read_cstring(address: int) -> bytes:
    return ctypes.string_at(address)


def function_address(func: Any) -> int:
    """Address of a ctypes function object (CFUNCTYPE instance or CDLL export)."""
    return ctypes.cast(func, ctypes.c_void_p).value or 0
