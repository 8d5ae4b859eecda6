"""
Type metadata consumed by the marshalling engine.

Everything here is pure data: frozen, hashable dataclasses describing native
types, parameters, callables and the named interfaces they reference.
"""

from .descriptors import (
    INTEGER_TAGS,
    RETURN_NAME,
    VOID,
    CallableSignature,
    CallbackInfo,
    Direction,
    EnumInfo,
    FieldInfo,
    InterfaceInfo,
    ObjectInfo,
    ParameterSpec,
    PrimitiveTag,
    PropertyInfo,
    Scope,
    SignalInfo,
    StructInfo,
    Transfer,
    TypeDescriptor,
    TypeKind,
    qualify,
    split_qualified,
)

__all__ = [
    # Descriptors
    "TypeDescriptor",
    "TypeKind",
    "PrimitiveTag",
    "Transfer",
    "Direction",
    "Scope",
    "INTEGER_TAGS",
    "VOID",
    # Callables
    "ParameterSpec",
    "CallableSignature",
    "RETURN_NAME",
    # Interfaces
    "InterfaceInfo",
    "EnumInfo",
    "FieldInfo",
    "StructInfo",
    "PropertyInfo",
    "SignalInfo",
    "ObjectInfo",
    "CallbackInfo",
    # Names
    "qualify",
    "split_qualified",
]
