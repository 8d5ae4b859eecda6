"""
girbridge - call GObject-introspectable native libraries from Python.

girbridge is a generic marshalling and invocation engine: given
machine-readable metadata for a native function, struct, object or signal,
it converts Python values to native calling-convention values, makes the
call through ctypes, converts return and out values back, and tracks who
owns every object or buffer that crosses the boundary. There is no
per-function glue code.

Quick Start
-----------

Load a typelib and call a function:

    >>> from girbridge import Engine
    >>>
    >>> engine = Engine()
    >>> engine.repository.require("Demo", "1.0")
    >>> engine.invoke_by_name("Demo", "add", [2, 3])
    5

Out parameters come back after the return value:

    >>> engine.invoke_by_name("Demo", "divmod", [17, 5])
    (3, 2)

Objects, properties and signals:

    >>> button = engine.invoke_by_name("Demo", "Button.new", ["OK"])
    >>> button.get_property("label")
    'OK'
    >>> handler = button.connect("clicked", lambda source: print("clicked"))
    >>> button.invoke("click")
    clicked
    >>> button.disconnect(handler)
    >>> button.release()


Core Classes
------------

- `Engine` - Invokes callables, wraps pointers, accesses properties and signals
- `EngineConfig` - Search paths and GObject runtime entry points
- `Repository` - Metadata registry fed from JSON typelibs or by hand
- `ObjectWrapper` / `StructWrapper` - Host handles for native instances


Ownership
---------

Every pointer received from native code is ``borrowed`` (native code frees
it) or ``owned`` (the host must give it back). Call ``release()`` when done
with an owned wrapper; a garbage-collected wrapper is released as a
backstop. Releasing twice raises ``DoubleReleaseError``.
"""

from girbridge._logging import setup_logging
from girbridge._version import __version__ as __version__
from girbridge.config import EngineConfig
from girbridge.engine import Engine

# Exceptions
from girbridge.exceptions import (
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
from girbridge.objects import ObjectWrapper, StructWrapper
from girbridge.ownership import OwnershipState
from girbridge.repository import Repository

# Metadata
from girbridge.types import (
    CallableSignature,
    CallbackInfo,
    Direction,
    EnumInfo,
    FieldInfo,
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
)

__all__ = [
    # Engine
    "Engine",
    "EngineConfig",
    "Repository",
    # Wrappers
    "ObjectWrapper",
    "StructWrapper",
    "OwnershipState",
    # Types
    "TypeDescriptor",
    "TypeKind",
    "PrimitiveTag",
    "Transfer",
    "Direction",
    "Scope",
    "ParameterSpec",
    "CallableSignature",
    # Interfaces
    "EnumInfo",
    "StructInfo",
    "FieldInfo",
    "ObjectInfo",
    "PropertyInfo",
    "SignalInfo",
    "CallbackInfo",
    # Logging
    "setup_logging",
    # Exceptions
    "GirError",
    "TypeMismatchError",
    "ArityMismatchError",
    "UnsupportedSignatureError",
    "InvalidEnumValueError",
    "UnknownMemberError",
    "MemberAccessError",
    "UnknownRegistrationError",
    "DoubleReleaseError",
    "StateError",
    "MetadataError",
    "LoadError",
    "NativeCallError",
]
