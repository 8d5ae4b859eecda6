"""
girbridge exceptions.

This module defines the exception hierarchy for girbridge:

    GirError (base)
    ├── TypeMismatchError - Host value cannot become the required native type
    ├── ArityMismatchError - Wrong number of host arguments
    ├── UnsupportedSignatureError - Metadata describes an unmarshallable shape
    ├── InvalidEnumValueError - Value outside an enum/flags value set
    ├── UnknownMemberError - Unknown callable, type, property, field or signal
    │   └── MemberAccessError - Member exists but is not readable/writable
    ├── UnknownRegistrationError - Signal registration id was never issued
    ├── DoubleReleaseError - Handle released twice
    ├── StateError - Operation on a released handle
    ├── MetadataError - Malformed metadata or typelib document
    ├── LoadError - Namespace or shared library cannot be loaded
    └── NativeCallError - Callee reported a GError
"""

from .exceptions import (
    ArityMismatchError,
    DoubleReleaseError,
    GirError,
    InvalidEnumValueError,
    LoadError,
    MemberAccessError,
    MetadataError,
    NativeCallError,
    StateError,
    TypeMismatchError,
    UnknownMemberError,
    UnknownRegistrationError,
    UnsupportedSignatureError,
)

__all__ = [
    # Base
    "GirError",
    # Marshalling
    "TypeMismatchError",
    "ArityMismatchError",
    "UnsupportedSignatureError",
    "InvalidEnumValueError",
    # Members
    "UnknownMemberError",
    "MemberAccessError",
    # Signals
    "UnknownRegistrationError",
    # Ownership
    "DoubleReleaseError",
    "StateError",
    # Metadata
    "MetadataError",
    "LoadError",
    # Native
    "NativeCallError",
]
