"""Value conversion between host and native representations."""

from ._native import CAllocator, default_allocator
from .frame import CallFrame, Site
from .values import CallbackBridge, HandleBridge, ValueMarshaller

__all__ = [
    "ValueMarshaller",
    "HandleBridge",
    "CallbackBridge",
    "CallFrame",
    "Site",
    "CAllocator",
    "default_allocator",
]
