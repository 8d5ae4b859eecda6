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

Usage:
    try:
        engine.invoke_by_name("GLib", "base64_encode", "not bytes")
    except girbridge.TypeMismatchError as e:
        print(e.details["parameter"])
    except girbridge.GirError as e:
        # Catch any girbridge error with structured details
        print(f"Error {e.code}: {e}")

See Also
--------
    GirError : Base exception for all girbridge errors.
"""

from typing import Any

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


class GirError(Exception):
    """
    Base exception for all girbridge errors.

    All girbridge-specific exceptions inherit from this class, enabling:
    - Catch-all handling: ``except girbridge.GirError``
    - Stable string-based error codes for programmatic handling
    - Structured details naming the failing callable and parameter

    Attributes
    ----------
    message : str
        Human-readable error description.
    code : str
        Stable, string-based error code (e.g., "TYPE_MISMATCH").
    details : dict[str, Any]
        Structured context (e.g., {"callable": "Gtk.init", "parameter": "argv"}).
    """

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.args[0]!r}, code={self.code!r})"


# =============================================================================
# Marshalling Errors
# =============================================================================


class TypeMismatchError(GirError, TypeError):
    """
    Host value cannot be converted to the required native type.

    Raised before the native call is made. Common causes:
    - Wrong Python type (``int`` given for a ``utf8`` parameter)
    - Integer outside the native range (300 for ``uint8``)
    - Float with a fractional part given for an integer slot
    - ``None`` for a parameter that is not nullable
    """

    def __init__(
        self,
        message: str,
        code: str = "TYPE_MISMATCH",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, code, details)


class ArityMismatchError(GirError, TypeError):
    """
    Wrong number of host arguments for a callable.

    The expected count excludes synthesized parameters (array lengths,
    callback user data, destroy notifies) and out-only parameters.
    """

    def __init__(
        self,
        message: str,
        code: str = "ARITY_MISMATCH",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, code, details)


class UnsupportedSignatureError(GirError, NotImplementedError):
    """
    Metadata describes a shape the engine cannot marshal.

    Always raised while building the argument plan, never in the middle of
    a call. Examples: an array without any length source, a callback type
    without a known signature, a by-value struct parameter.
    """

    def __init__(
        self,
        message: str,
        code: str = "UNSUPPORTED_SIGNATURE",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, code, details)


class InvalidEnumValueError(GirError, ValueError):
    """Value is not a member of the enum, or has bits outside the flags set."""

    def __init__(
        self,
        message: str,
        code: str = "INVALID_ENUM_VALUE",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, code, details)


# =============================================================================
# Member Errors
# =============================================================================


class UnknownMemberError(GirError, AttributeError):
    """
    Unknown callable, type, method, property, field or signal name.

    Raised by metadata lookups and by wrapper member access.
    """

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_MEMBER",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, code, details)


class MemberAccessError(UnknownMemberError):
    """
    Member exists but does not allow the requested access.

    Raised when reading a property/field that is not readable, or writing
    one that is not writable.
    """

    def __init__(
        self,
        message: str,
        code: str = "MEMBER_ACCESS",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, code, details)


class UnknownRegistrationError(GirError, KeyError):
    """Signal registration id was never issued by this dispatcher."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_REGISTRATION",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, code, details)

    def __str__(self) -> str:
        # KeyError.__str__ would repr() the message
        return self.message


# =============================================================================
# Ownership Errors
# =============================================================================


class DoubleReleaseError(GirError, RuntimeError):
    """
    Native handle released twice.

    This is a programming error in host code. It is surfaced rather than
    ignored so that ownership bugs are visible.
    """

    def __init__(
        self,
        message: str,
        code: str = "DOUBLE_RELEASE",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, code, details)


class StateError(GirError, RuntimeError):
    """
    Invalid handle state.

    Raised when a released wrapper is used for a method call, a property
    access, a signal connection, or passed as an argument.
    """

    def __init__(
        self,
        message: str,
        code: str = "STATE_ERROR",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, code, details)


# =============================================================================
# Metadata Errors
# =============================================================================


class MetadataError(GirError, ValueError):
    """Metadata is internally inconsistent or a typelib document is invalid."""

    def __init__(
        self,
        message: str,
        code: str = "METADATA_ERROR",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, code, details)


class LoadError(GirError, OSError):
    """
    Namespace or shared library cannot be loaded.

    Raised when no typelib document is found on the search path for a
    namespace/version, or when none of its shared libraries can be opened.
    """

    def __init__(
        self,
        message: str,
        code: str = "LOAD_ERROR",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, code, details)


# =============================================================================
# Native Errors
# =============================================================================


class NativeCallError(GirError, RuntimeError):
    """
    The native callee reported failure through a ``GError``.

    Attributes
    ----------
    domain : int
        The error domain quark.
    error_code : int
        The domain specific error code.
    """

    def __init__(
        self,
        message: str,
        domain: int = 0,
        error_code: int = 0,
        code: str = "NATIVE_CALL_ERROR",
        details: dict[str, Any] | None = None,
    ):
        self.domain = domain
        self.error_code = error_code
        merged = {"domain": domain, "error_code": error_code}
        merged.update(details or {})
        super().__init__(message, code, merged)
