"""
Engine configuration.

Environment Variables
---------------------
GIRBRIDGE_TYPELIB_PATH : str
    Directories (``os.pathsep``-separated) searched for
    ``<Namespace>-<version>.json`` typelib documents.
GIRBRIDGE_LIBRARY_PATH : str
    Directories (``os.pathsep``-separated) searched for shared libraries
    before the system loader.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


def _split_path(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(part for part in value.split(os.pathsep) if part)


@dataclass(frozen=True)
class EngineConfig:
    """
    Search paths and the GObject runtime entry points used generically.

    Entry points are qualified symbol names (``"Namespace.symbol"``)
    resolved through the metadata provider.
    """

    typelib_path: tuple[str, ...] = ()
    library_path: tuple[str, ...] = ()
    signal_connect: str = "GObject.g_signal_connect_data"
    signal_disconnect: str = "GObject.g_signal_handler_disconnect"
    property_get: str = "GObject.g_object_get"
    property_set: str = "GObject.g_object_set"
    object_ref: str = "GObject.g_object_ref"
    object_unref: str = "GObject.g_object_unref"
    error_free: str = "GLib.g_error_free"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides) -> EngineConfig:
        """Build a config from ``GIRBRIDGE_*`` environment variables."""
        env = os.environ if environ is None else environ
        values = {
            "typelib_path": _split_path(env.get("GIRBRIDGE_TYPELIB_PATH")),
            "library_path": _split_path(env.get("GIRBRIDGE_LIBRARY_PATH")),
        }
        values.update(overrides)
        return cls(**values)
