"""
Metadata provider and library loader.

The engine consumes metadata through the ``MetadataProvider`` protocol and
shared libraries through ``LibraryLoader``. ``Repository`` implements both:
an in-memory registry of namespaces filled programmatically
(``add_callable``, ``add_interface``, ``add_symbol``) or from JSON typelib
documents (``load_typelib``, ``require``).

Symbols resolve first from explicitly registered addresses, then from the
namespace's shared libraries, then from the libraries of its dependencies.
"""

from __future__ import annotations

import ctypes
import ctypes.util
import dataclasses
import os
import re
import threading
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from ._logging import scoped_logger
from .exceptions import LoadError, UnknownMemberError
from .marshal._native import function_address
from .typelib import TypelibDocument, load_document
from .types import (
    CallableSignature,
    CallbackInfo,
    EnumInfo,
    InterfaceInfo,
    ObjectInfo,
    StructInfo,
    TypeDescriptor,
    split_qualified,
)

log = scoped_logger("repository")


class MetadataProvider(Protocol):
    """Source of callable and type metadata."""

    def describe_callable(self, namespace: str, name: str) -> CallableSignature: ...

    def describe_type(self, namespace: str, name: str) -> TypeDescriptor: ...

    def describe_interface(self, namespace: str, name: str) -> InterfaceInfo: ...

    def resolve_symbol(self, namespace: str, name: str) -> int: ...


class LibraryLoader(Protocol):
    """Opens the shared libraries of a namespace."""

    def load(self, namespace: str, version: str | None = None) -> Sequence[ctypes.CDLL]: ...


class CtypesLoader:
    """
    Opens shared libraries with ``ctypes.CDLL``.

    ``search_path`` directories are tried first, then the system loader,
    then ``ctypes.util.find_library`` on the bare library name.
    """

    def __init__(self, search_path: Iterable[str | Path] = ()):
        self.search_path = [Path(p) for p in search_path]
        self._opened: dict[str, ctypes.CDLL] = {}
        self._lock = threading.Lock()

    def open(self, library: str) -> ctypes.CDLL:
        with self._lock:
            lib = self._opened.get(library)
            if lib is not None:
                return lib
            errors: list[str] = []
            for candidate in self._candidates(library):
                try:
                    lib = ctypes.CDLL(candidate)
                except OSError as e:
                    errors.append(f"{candidate}: {e}")
                    continue
                self._opened[library] = lib
                log.debug("Opened shared library", extra={"library": candidate})
                return lib
        raise LoadError(
            f"Cannot open shared library {library!r}",
            details={"library": library, "attempts": errors},
        )

    def _candidates(self, library: str) -> list[str]:
        candidates = [str(d / library) for d in self.search_path if (d / library).exists()]
        candidates.append(library)
        bare = re.sub(r"^lib|\.(so|dylib|dll).*$", "", os.path.basename(library))
        found = ctypes.util.find_library(bare) if bare else None
        if found and found not in candidates:
            candidates.append(found)
        return candidates


@dataclass
class _Namespace:
    name: str
    version: str | None = None
    libraries: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    callables: dict[str, CallableSignature] = field(default_factory=dict)
    interfaces: dict[str, InterfaceInfo] = field(default_factory=dict)
    symbols: dict[str, int] = field(default_factory=dict)
    opened: list[ctypes.CDLL] | None = None


class Repository:
    """
    In-memory metadata registry.

    Parameters
    ----------
    typelib_path : iterable of path
        Directories searched by ``require`` for ``<Namespace>-<version>.json``.
    library_path : iterable of path
        Directories searched for shared libraries.
    loader : CtypesLoader, optional
        Library opener (defaults to one using ``library_path``).
    """

    def __init__(
        self,
        typelib_path: Iterable[str | Path] = (),
        library_path: Iterable[str | Path] = (),
        loader: CtypesLoader | None = None,
    ):
        self.typelib_path = [Path(p) for p in typelib_path]
        self.loader = loader or CtypesLoader(library_path)
        self._namespaces: dict[str, _Namespace] = {}
        self._lock = threading.RLock()

    @property
    def namespaces(self) -> list[str]:
        return sorted(self._namespaces)

    def version_of(self, namespace: str) -> str | None:
        return self._namespace(namespace).version

    # =========================================================================
    # Registration
    # =========================================================================

    def add_namespace(
        self,
        namespace: str,
        version: str | None = None,
        libraries: Iterable[str] = (),
        dependencies: Iterable[str] = (),
    ) -> None:
        with self._lock:
            ns = self._namespaces.setdefault(namespace, _Namespace(namespace))
            if version is not None:
                ns.version = version
            ns.libraries.extend(lib for lib in libraries if lib not in ns.libraries)
            ns.dependencies.extend(d for d in dependencies if d not in ns.dependencies)

    def add_callable(self, signature: CallableSignature, namespace: str | None = None) -> None:
        """Register a top-level function."""
        namespace = namespace or signature.namespace
        if not namespace:
            raise ValueError(f"No namespace given for callable {signature.name!r}")
        if signature.namespace != namespace:
            signature = dataclasses.replace(signature, namespace=namespace)
        with self._lock:
            self._entry(namespace).callables[signature.name] = signature

    def add_interface(self, info: InterfaceInfo) -> None:
        """Register an enum, struct, object or callback type."""
        with self._lock:
            self._entry(info.namespace).interfaces[info.name] = info

    def add_symbol(self, namespace: str, name: str, address: int) -> None:
        """Register a symbol address directly (takes precedence over libraries)."""
        with self._lock:
            self._entry(namespace).symbols[name] = address

    def add_document(self, document: TypelibDocument) -> None:
        """Register everything a typelib document describes."""
        with self._lock:
            self.add_namespace(
                document.namespace,
                document.version,
                document.shared_libraries,
                document.dependencies,
            )
            for signature in document.signatures():
                self.add_callable(signature)
            for info in document.interfaces():
                self.add_interface(info)
        log.debug(
            "Registered typelib",
            extra={"namespace": document.namespace, "version": document.version},
        )

    def load_typelib(self, path: str | Path) -> str:
        """Load a typelib document file; returns its namespace."""
        document = load_document(path)
        self.add_document(document)
        return document.namespace

    def require(self, namespace: str, version: str | None = None) -> None:
        """
        Make ``namespace`` available, loading its typelib from the search path.

        Dependencies (``"Name-version"``) are required first.

        Raises
        ------
        LoadError
            If no document is found, or the loaded version differs from
            ``version``.
        """
        with self._lock:
            known = self._namespaces.get(namespace)
            if known is not None and (version is None or known.version in (None, version)):
                return
            if known is not None and known.version is not None:
                raise LoadError(
                    f"Namespace {namespace} {known.version} already loaded, "
                    f"cannot load version {version}",
                    details={"namespace": namespace, "version": version},
                )
            path = self._find_typelib(namespace, version)
            document = load_document(path)
            for dependency in document.dependencies:
                dep_name, _, dep_version = dependency.partition("-")
                self.require(dep_name, dep_version or None)
            self.add_document(document)

    def _find_typelib(self, namespace: str, version: str | None) -> Path:
        pattern = f"{namespace}-{version}.json" if version else f"{namespace}-*.json"
        matches: list[Path] = []
        for directory in self.typelib_path:
            matches.extend(sorted(directory.glob(pattern)))
        if not matches:
            searched = ", ".join(str(d) for d in self.typelib_path) or "(empty search path)"
            raise LoadError(
                f"Typelib for namespace {namespace}"
                f"{' ' + version if version else ''} not found in {searched}",
                details={"namespace": namespace, "version": version},
            )
        if version is None:
            return max(matches, key=lambda p: _version_key(p.stem.partition("-")[2]))
        return matches[0]

    def _entry(self, namespace: str) -> _Namespace:
        ns = self._namespaces.get(namespace)
        if ns is None:
            ns = self._namespaces[namespace] = _Namespace(namespace)
        return ns

    def _namespace(self, namespace: str) -> _Namespace:
        ns = self._namespaces.get(namespace)
        if ns is None:
            if not self.typelib_path:
                raise LoadError(
                    f"Namespace {namespace} is not loaded", details={"namespace": namespace}
                )
            self.require(namespace)
            ns = self._namespaces[namespace]
        return ns

    # =========================================================================
    # MetadataProvider
    # =========================================================================

    def describe_callable(self, namespace: str, name: str) -> CallableSignature:
        """
        Signature of a function, or of a type's method/constructor (``"Type.method"``).

        Raises
        ------
        UnknownMemberError
            If no such callable exists.
        """
        ns = self._namespace(namespace)
        container, dot, member = name.partition(".")
        if dot:
            info = self.describe_interface(namespace, container)
            method = None
            if isinstance(info, (StructInfo, ObjectInfo)):
                method = info.find_method(member)
            if method is None:
                raise UnknownMemberError(
                    f"{namespace}.{container} has no method {member!r}",
                    details={"callable": f"{namespace}.{name}"},
                )
            return method
        signature = ns.callables.get(name)
        if signature is None:
            raise UnknownMemberError(
                f"Namespace {namespace} has no function {name!r}",
                details={"callable": f"{namespace}.{name}"},
            )
        return signature

    def describe_interface(self, namespace: str, name: str) -> InterfaceInfo:
        ns = self._namespace(namespace)
        info = ns.interfaces.get(name)
        if info is None:
            raise UnknownMemberError(
                f"Namespace {namespace} has no type {name!r}",
                details={"callable": f"{namespace}.{name}"},
            )
        return info

    def describe_type(self, namespace: str, name: str) -> TypeDescriptor:
        info = self.describe_interface(namespace, name)
        qualified = info.qualified_name
        if isinstance(info, ObjectInfo):
            return TypeDescriptor.object(qualified)
        if isinstance(info, StructInfo):
            return TypeDescriptor.struct(qualified)
        if isinstance(info, EnumInfo):
            return TypeDescriptor.enum(qualified)
        assert isinstance(info, CallbackInfo)
        return TypeDescriptor.callback(qualified)

    def interface(self, qualified: str) -> InterfaceInfo:
        """``describe_interface`` taking ``"Namespace.Name"``."""
        return self.describe_interface(*split_qualified(qualified))

    def resolve_symbol(self, namespace: str, name: str) -> int:
        """
        Address of symbol ``name`` in ``namespace``.

        Raises
        ------
        UnknownMemberError
            If no library of the namespace (or its dependencies) exports it.
        """
        address = self._lookup_symbol(namespace, name, set())
        if not address:
            raise UnknownMemberError(
                f"Symbol {name!r} not found in namespace {namespace}",
                details={"callable": f"{namespace}.{name}", "symbol": name},
            )
        return address

    def resolve(self, qualified: str) -> int:
        """``resolve_symbol`` taking ``"Namespace.symbol"``."""
        return self.resolve_symbol(*split_qualified(qualified))

    def _lookup_symbol(self, namespace: str, name: str, seen: set[str]) -> int:
        if namespace in seen:
            return 0
        seen.add(namespace)
        ns = self._namespace(namespace)
        address = ns.symbols.get(name)
        if address:
            return address
        for lib in self.load(namespace):
            try:
                return function_address(getattr(lib, name))
            except AttributeError:
                continue
        for dependency in ns.dependencies:
            dep_name = dependency.partition("-")[0]
            if dep_name in self._namespaces or self.typelib_path:
                address = self._lookup_symbol(dep_name, name, seen)
                if address:
                    return address
        return 0

    # =========================================================================
    # LibraryLoader
    # =========================================================================

    def load(self, namespace: str, version: str | None = None) -> Sequence[ctypes.CDLL]:
        """Open (once) and return the shared libraries of ``namespace``."""
        if version is not None:
            self.require(namespace, version)
        ns = self._namespace(namespace)
        with self._lock:
            if ns.opened is None:
                ns.opened = [self.loader.open(lib) for lib in ns.libraries]
            return ns.opened


def _version_key(version: str) -> tuple[int, ...]:
    return tuple(int(part) for part in re.findall(r"\d+", version))
