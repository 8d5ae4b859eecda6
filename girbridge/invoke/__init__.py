"""Argument planning and native invocation (both call directions)."""

from .invoker import NativeInvoker
from .plan import ArgSlot, ArgumentPlan, PlanCache, SlotRole, build_plan
from .trampoline import NativeFunction, Trampoline, TrampolineFactory

__all__ = [
    # Planning
    "ArgumentPlan",
    "ArgSlot",
    "SlotRole",
    "PlanCache",
    "build_plan",
    # Invocation
    "NativeInvoker",
    # Reverse direction
    "Trampoline",
    "TrampolineFactory",
    "NativeFunction",
]
