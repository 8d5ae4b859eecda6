"""
Native type metadata - the closed set of descriptors the engine marshals.

A ``TypeDescriptor`` describes one native type; ``ParameterSpec`` and
``CallableSignature`` describe a callable; the ``*Info`` classes describe
the named types (enums, structs, objects, callbacks) a descriptor can refer
to through its ``interface`` name.

All classes here are frozen dataclasses: they are hashable, safe to share
between threads, and usable as cache keys (argument plans are cached by
signature).

Interface names are qualified as ``"Namespace.Name"``.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Union

from ..exceptions import MetadataError, UnknownMemberError

RETURN_NAME = "return"


class TypeKind(Enum):
    """Variant tag of a ``TypeDescriptor``."""

    PRIMITIVE = "primitive"
    STRING = "string"
    ARRAY = "array"
    STRUCT = "struct"
    OBJECT = "object"
    ENUM = "enum"
    CALLBACK = "callback"
    VOID = "void"


class PrimitiveTag(Enum):
    """Fixed-size native scalar types."""

    BOOLEAN = "boolean"
    INT8 = "int8"
    UINT8 = "uint8"
    INT16 = "int16"
    UINT16 = "uint16"
    INT32 = "int32"
    UINT32 = "uint32"
    INT64 = "int64"
    UINT64 = "uint64"
    FLOAT = "float"
    DOUBLE = "double"
    GTYPE = "gtype"
    UNICHAR = "unichar"


INTEGER_TAGS = frozenset(
    {
        PrimitiveTag.INT8,
        PrimitiveTag.UINT8,
        PrimitiveTag.INT16,
        PrimitiveTag.UINT16,
        PrimitiveTag.INT32,
        PrimitiveTag.UINT32,
        PrimitiveTag.INT64,
        PrimitiveTag.UINT64,
        PrimitiveTag.GTYPE,
    }
)


class Transfer(Enum):
    """Which side owns a value after it crosses the boundary."""

    NONE = "none"
    CONTAINER = "container"
    FULL = "full"


class Direction(Enum):
    """Parameter direction."""

    IN = "in"
    OUT = "out"
    INOUT = "inout"


class Scope(Enum):
    """How long a callback trampoline must stay alive."""

    CALL = "call"
    ASYNC = "async"
    NOTIFIED = "notified"
    FOREVER = "forever"


_INTERFACE_KINDS = frozenset({TypeKind.STRUCT, TypeKind.OBJECT, TypeKind.ENUM, TypeKind.CALLBACK})
_ALWAYS_POINTER = frozenset({TypeKind.STRING, TypeKind.ARRAY, TypeKind.OBJECT, TypeKind.CALLBACK})


def qualify(namespace: str, name: str) -> str:
    """Return ``name`` qualified with ``namespace`` unless it already is."""
    return name if "." in name else f"{namespace}.{name}"


def split_qualified(qualified: str) -> tuple[str, str]:
    """Split ``"Namespace.Name"`` into its two parts."""
    namespace, sep, name = qualified.partition(".")
    if not sep or not namespace or not name:
        raise MetadataError(
            f"Expected a qualified 'Namespace.Name', got {qualified!r}",
            details={"name": qualified},
        )
    return namespace, name


@dataclass(frozen=True)
class TypeDescriptor:
    """
    One native type.

    Attributes
    ----------
    kind : TypeKind
        The variant.
    tag : PrimitiveTag, optional
        Scalar type, required for ``PRIMITIVE``.
    element_type : TypeDescriptor, optional
        Element type, required for ``ARRAY`` and forbidden otherwise.
    interface : str, optional
        Qualified name of the ``EnumInfo``/``StructInfo``/``ObjectInfo``/
        ``CallbackInfo``, required for the interface kinds.
    transfer : Transfer
        Ownership transfer. Normalized to ``NONE`` for non-pointer scalars.
    is_nullable : bool
        Whether ``None`` is an acceptable host value / NULL a valid native one.
    is_pointer : bool
        Whether the native representation is a pointer. Always true for
        strings, arrays, objects and callbacks; ``VOID`` with ``is_pointer``
        is an opaque ``gpointer``.
    zero_terminated : bool
        Arrays only: a NULL/zero element terminates the array.
    fixed_size : int, optional
        Arrays only: compile-time element count.
    is_filename : bool
        Strings only: use the filesystem encoding instead of UTF-8.
    """

    kind: TypeKind
    tag: PrimitiveTag | None = None
    element_type: TypeDescriptor | None = None
    interface: str | None = None
    transfer: Transfer = Transfer.NONE
    is_nullable: bool = False
    is_pointer: bool = False
    zero_terminated: bool = False
    fixed_size: int | None = None
    is_filename: bool = False

    def __post_init__(self) -> None:
        if self.kind is TypeKind.ARRAY:
            if self.element_type is None:
                raise MetadataError("An array type requires exactly one element type")
            if self.fixed_size is not None and self.fixed_size < 0:
                raise MetadataError(f"Array fixed size must be >= 0, got {self.fixed_size}")
        elif self.element_type is not None:
            raise MetadataError(f"Only array types carry an element type, not {self.kind.value}")
        if self.kind is TypeKind.PRIMITIVE and self.tag is None:
            raise MetadataError("A primitive type requires a tag")
        if self.kind in _INTERFACE_KINDS and not self.interface:
            raise MetadataError(f"A {self.kind.value} type requires an interface name")
        if self.kind in _ALWAYS_POINTER:
            object.__setattr__(self, "is_pointer", True)
        if not self.is_pointer and self.kind in (TypeKind.PRIMITIVE, TypeKind.ENUM, TypeKind.VOID):
            object.__setattr__(self, "transfer", Transfer.NONE)

    # -------------------------------------------------------------------------
    # Constructors
    # -------------------------------------------------------------------------

    @classmethod
    def primitive(cls, tag: PrimitiveTag | str) -> TypeDescriptor:
        return cls(TypeKind.PRIMITIVE, tag=PrimitiveTag(tag))

    @classmethod
    def utf8(cls, transfer: Transfer = Transfer.NONE, nullable: bool = False) -> TypeDescriptor:
        return cls(TypeKind.STRING, transfer=transfer, is_nullable=nullable)

    @classmethod
    def filename(cls, transfer: Transfer = Transfer.NONE, nullable: bool = False) -> TypeDescriptor:
        return cls(TypeKind.STRING, transfer=transfer, is_nullable=nullable, is_filename=True)

    @classmethod
    def array(
        cls,
        element: TypeDescriptor,
        transfer: Transfer = Transfer.NONE,
        nullable: bool = False,
        zero_terminated: bool = False,
        fixed_size: int | None = None,
    ) -> TypeDescriptor:
        return cls(
            TypeKind.ARRAY,
            element_type=element,
            transfer=transfer,
            is_nullable=nullable,
            zero_terminated=zero_terminated,
            fixed_size=fixed_size,
        )

    @classmethod
    def struct(
        cls,
        interface: str,
        transfer: Transfer = Transfer.NONE,
        nullable: bool = False,
        pointer: bool = True,
    ) -> TypeDescriptor:
        return cls(
            TypeKind.STRUCT,
            interface=interface,
            transfer=transfer,
            is_nullable=nullable,
            is_pointer=pointer,
        )

    @classmethod
    def object(
        cls, interface: str, transfer: Transfer = Transfer.NONE, nullable: bool = False
    ) -> TypeDescriptor:
        return cls(TypeKind.OBJECT, interface=interface, transfer=transfer, is_nullable=nullable)

    @classmethod
    def enum(cls, interface: str) -> TypeDescriptor:
        return cls(TypeKind.ENUM, interface=interface)

    @classmethod
    def callback(cls, interface: str, nullable: bool = False) -> TypeDescriptor:
        return cls(TypeKind.CALLBACK, interface=interface, is_nullable=nullable)

    @classmethod
    def void(cls, pointer: bool = False, nullable: bool = True) -> TypeDescriptor:
        return cls(TypeKind.VOID, is_pointer=pointer, is_nullable=nullable and pointer)

    # -------------------------------------------------------------------------
    # Classification
    # -------------------------------------------------------------------------

    @property
    def is_void(self) -> bool:
        """True for a plain ``void`` (no value), false for ``gpointer``."""
        return self.kind is TypeKind.VOID and not self.is_pointer

    @property
    def is_integer(self) -> bool:
        return self.kind is TypeKind.PRIMITIVE and not self.is_pointer and self.tag in INTEGER_TAGS

    def with_transfer(self, transfer: Transfer) -> TypeDescriptor:
        """Return a copy of this descriptor with a different transfer."""
        if transfer is self.transfer:
            return self
        return TypeDescriptor(
            self.kind,
            tag=self.tag,
            element_type=self.element_type,
            interface=self.interface,
            transfer=transfer,
            is_nullable=self.is_nullable,
            is_pointer=self.is_pointer,
            zero_terminated=self.zero_terminated,
            fixed_size=self.fixed_size,
            is_filename=self.is_filename,
        )

    def describe(self) -> str:
        """Short human-readable name used in error messages."""
        if self.kind is TypeKind.PRIMITIVE:
            assert self.tag is not None
            return self.tag.value
        if self.kind is TypeKind.STRING:
            return "filename" if self.is_filename else "utf8"
        if self.kind is TypeKind.ARRAY:
            assert self.element_type is not None
            return f"array<{self.element_type.describe()}>"
        if self.kind is TypeKind.VOID:
            return "gpointer" if self.is_pointer else "void"
        return str(self.interface)

    def __str__(self) -> str:
        return self.describe()


VOID = TypeDescriptor.void()


@dataclass(frozen=True)
class ParameterSpec:
    """
    One parameter of a callable.

    ``length_of`` names the array parameter (or ``"return"``) this integer
    parameter sizes. ``closure_of`` / ``destroy_of`` name the callback
    parameter this user-data / destroy-notify parameter belongs to. In a
    callback's own signature, ``closure_of`` marks the user-data parameter.
    """

    name: str
    type: TypeDescriptor
    direction: Direction = Direction.IN
    length_of: str | None = None
    caller_allocates: bool = False
    closure_of: str | None = None
    destroy_of: str | None = None
    scope: Scope = Scope.CALL

    def __post_init__(self) -> None:
        if self.length_of is not None and not self.type.is_integer:
            raise MetadataError(
                f"Length parameter '{self.name}' must be an integer, "
                f"got {self.type.describe()}",
                details={"parameter": self.name},
            )

    @property
    def is_in(self) -> bool:
        return self.direction is not Direction.OUT

    @property
    def is_out(self) -> bool:
        return self.direction is not Direction.IN


@dataclass(frozen=True)
class CallableSignature:
    """
    Signature of a native function, method, callback or signal handler.

    ``parameters`` are in native order. For methods (``is_method``) the
    instance pointer is an implicit first native argument not listed here.
    ``throws`` adds an implicit trailing ``GError **`` argument.
    """

    name: str
    parameters: tuple[ParameterSpec, ...] = ()
    return_spec: ParameterSpec = ParameterSpec(RETURN_NAME, VOID, Direction.OUT)
    symbol: str | None = None
    namespace: str | None = None
    container: str | None = None
    is_method: bool = False
    throws: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "parameters", tuple(self.parameters))
        names = [p.name for p in self.parameters]
        if len(set(names)) != len(names) or RETURN_NAME in names:
            raise MetadataError(
                f"Duplicate or reserved parameter names in {self.qualified_name}: {names}",
                details={"callable": self.qualified_name},
            )

    @classmethod
    def build(
        cls,
        name: str,
        parameters: Iterable[ParameterSpec] = (),
        returns: TypeDescriptor = VOID,
        **kwargs,
    ) -> CallableSignature:
        """Convenience constructor taking the return type instead of a ParameterSpec."""
        return cls(
            name,
            tuple(parameters),
            ParameterSpec(RETURN_NAME, returns, Direction.OUT),
            **kwargs,
        )

    @property
    def return_type(self) -> TypeDescriptor:
        return self.return_spec.type

    @property
    def qualified_name(self) -> str:
        parts = [p for p in (self.namespace, self.container, self.name) if p]
        return ".".join(parts)

    def parameter(self, name: str) -> ParameterSpec:
        if name == RETURN_NAME:
            return self.return_spec
        for param in self.parameters:
            if param.name == name:
                return param
        raise UnknownMemberError(
            f"{self.qualified_name} has no parameter named {name!r}",
            details={"callable": self.qualified_name, "parameter": name},
        )


# =============================================================================
# Interface infos
# =============================================================================


@dataclass(frozen=True)
class EnumInfo:
    """Enumeration or bit-flags type with its known value set."""

    name: str
    namespace: str
    values: tuple[tuple[str, int], ...]
    is_flags: bool = False
    storage: PrimitiveTag = PrimitiveTag.INT32

    def __post_init__(self) -> None:
        values = self.values
        if isinstance(values, Mapping):
            values = tuple(values.items())
        object.__setattr__(self, "values", tuple((str(k), int(v)) for k, v in values))
        if self.storage not in INTEGER_TAGS:
            raise MetadataError(f"Enum storage must be an integer type, got {self.storage.value}")

    @property
    def qualified_name(self) -> str:
        return f"{self.namespace}.{self.name}"

    @property
    def members(self) -> dict[str, int]:
        return dict(self.values)

    @property
    def mask(self) -> int:
        bits = 0
        for _, value in self.values:
            bits |= value
        return bits

    def accepts(self, value: int) -> bool:
        if self.is_flags:
            return value & ~self.mask == 0
        return any(value == v for _, v in self.values)


@dataclass(frozen=True)
class FieldInfo:
    """Struct field at a fixed byte offset."""

    name: str
    type: TypeDescriptor
    offset: int
    readable: bool = True
    writable: bool = True


@dataclass(frozen=True)
class StructInfo:
    """Struct / boxed type: memory layout plus methods."""

    name: str
    namespace: str
    size: int
    fields: tuple[FieldInfo, ...] = ()
    methods: tuple[CallableSignature, ...] = ()
    copy_function: str | None = None
    free_function: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", tuple(self.fields))
        object.__setattr__(self, "methods", tuple(self.methods))

    @property
    def qualified_name(self) -> str:
        return f"{self.namespace}.{self.name}"

    def find_field(self, name: str) -> FieldInfo | None:
        return next((f for f in self.fields if f.name == name), None)

    def find_method(self, name: str) -> CallableSignature | None:
        return next((m for m in self.methods if m.name == name), None)


@dataclass(frozen=True)
class PropertyInfo:
    """Object property. ``getter``/``setter`` name methods of the owning type."""

    name: str
    type: TypeDescriptor
    readable: bool = True
    writable: bool = True
    getter: str | None = None
    setter: str | None = None


@dataclass(frozen=True)
class SignalInfo:
    """Signal emitted by an object, described by its argument signature."""

    name: str
    parameters: tuple[ParameterSpec, ...] = ()
    return_type: TypeDescriptor = VOID

    def __post_init__(self) -> None:
        object.__setattr__(self, "parameters", tuple(self.parameters))

    def handler_signature(self, owner: ObjectInfo) -> CallableSignature:
        """
        Signature of the native handler: ``(instance, *params, user_data)``.

        The instance is the implicit method argument; the trailing user data
        is marked with ``closure_of`` so it never reaches host code.
        """
        user_data = ParameterSpec(
            "user_data", TypeDescriptor.void(pointer=True), closure_of=self.name
        )
        return CallableSignature(
            self.name,
            self.parameters + (user_data,),
            ParameterSpec(RETURN_NAME, self.return_type, Direction.OUT),
            namespace=owner.namespace,
            container=owner.name,
            is_method=True,
        )


@dataclass(frozen=True)
class ObjectInfo:
    """Reference-counted object class."""

    name: str
    namespace: str
    parent: str | None = None
    methods: tuple[CallableSignature, ...] = ()
    properties: tuple[PropertyInfo, ...] = ()
    signals: tuple[SignalInfo, ...] = ()
    ref_function: str | None = None
    unref_function: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "methods", tuple(self.methods))
        object.__setattr__(self, "properties", tuple(self.properties))
        object.__setattr__(self, "signals", tuple(self.signals))

    @property
    def qualified_name(self) -> str:
        return f"{self.namespace}.{self.name}"

    def find_method(self, name: str) -> CallableSignature | None:
        return next((m for m in self.methods if m.name == name), None)

    def find_property(self, name: str) -> PropertyInfo | None:
        return next((p for p in self.properties if p.name == name), None)

    def find_signal(self, name: str) -> SignalInfo | None:
        return next((s for s in self.signals if s.name == name), None)


@dataclass(frozen=True)
class CallbackInfo:
    """Function-pointer type: the calling shape a trampoline must match."""

    name: str
    namespace: str
    signature: CallableSignature = field(default_factory=lambda: CallableSignature("callback"))

    @property
    def qualified_name(self) -> str:
        return f"{self.namespace}.{self.name}"


InterfaceInfo = Union[EnumInfo, StructInfo, ObjectInfo, CallbackInfo]
