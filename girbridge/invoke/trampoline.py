"""
Trampolines - the native -> host call direction.

A ``Trampoline`` is a ctypes callback built from the reverse argument plan
of a ``CallbackInfo`` (or a signal's handler signature). When native code
calls it, native arguments are converted with ``ValueMarshaller.to_host``,
the host callable runs, and its result goes back through ``to_native``.
The same marshaller serves both directions.

Lifetime follows the parameter scope:

- ``call``: released when the native call that received it returns
- ``async``: released after its first invocation
- ``notified``: released when native code calls the destroy notify
- ``forever``: kept until the engine shuts down

Exceptions raised by host code cannot unwind through native frames. The
trampoline records the exception and returns a zero value; the innermost
active ``invoke`` on the same thread re-raises it once its native call
has returned. With no active invoke (e.g. a main loop dispatching a
signal) the exception is logged.
"""

from __future__ import annotations

import itertools
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from .._logging import scoped_logger
from ..marshal._native import DestroyNotify, function_address
from ..marshal.frame import CallFrame, Site
from ..types import (
    CallableSignature,
    CallbackInfo,
    ObjectInfo,
    Scope,
    StructInfo,
    TypeDescriptor,
    TypeKind,
    qualify,
)
from .plan import ArgumentPlan, SlotRole

if TYPE_CHECKING:
    from .invoker import NativeInvoker

log = scoped_logger("invoke")


class Capture:
    """Exception raised by a callback during one native call."""

    __slots__ = ("error",)

    def __init__(self) -> None:
        self.error: BaseException | None = None


class Trampoline:
    """A native function pointer that forwards into a host callable."""

    def __init__(
        self,
        factory: TrampolineFactory,
        plan: ArgumentPlan,
        callback: Callable[..., Any],
        scope: Scope,
        token: int,
    ):
        self.plan = plan
        self.callback = callback
        self.scope = scope
        self.token = token
        self.calls = 0
        self._factory = factory
        self._result_frame: CallFrame | None = None
        # ctypes only holds a borrowed pointer, this reference keeps it alive
        self._cfunc = plan.prototype(self._dispatch)
        self.address = function_address(self._cfunc)

    @property
    def name(self) -> str:
        return self.plan.name

    def _dispatch(self, *native_args: Any) -> Any:
        return self._factory.dispatch(self, native_args)

    def hold_result(self, frame: CallFrame) -> None:
        """Keep buffers of the latest returned value alive until the next call."""
        previous, self._result_frame = self._result_frame, frame
        if previous is not None:
            previous.close()

    def release_result(self) -> None:
        self.hold_result(CallFrame(self.name))

    def __repr__(self) -> str:
        return f"Trampoline({self.name!r}, scope={self.scope.value}, token={self.token})"


class NativeFunction:
    """
    Host callable for a native function pointer.

    Calls go through the ordinary invoker using the callback type's
    signature; ``user_data`` is passed for the callable's own user data
    parameter.
    """

    def __init__(
        self, invoker: NativeInvoker, address: int, info: CallbackInfo, user_data: int = 0
    ):
        self.address = address
        self.info = info
        self.user_data = user_data
        self._invoker = invoker

    def __call__(self, *args: Any) -> Any:
        return self._invoker.call(self.address, self.info.signature, args, user_data=self.user_data)

    def __repr__(self) -> str:
        return f"NativeFunction({self.info.qualified_name}, address=0x{self.address:x})"


class _ThreadState(threading.local):
    def __init__(self) -> None:
        self.captures: list[Capture] = []


class TrampolineFactory:
    """
    Creates trampolines and owns the ones that outlive a call.

    Implements the marshaller's ``CallbackBridge``.

    Retired trampolines are dropped only while no thread is inside a native
    call or a dispatch, since any of them may still be executing one.
    """

    def __init__(self, invoker: NativeInvoker, lock: threading.RLock | None = None):
        self._invoker = invoker
        self._lock = lock or threading.RLock()
        self._live: dict[int, Trampoline] = {}
        self._retired: list[Trampoline] = []
        self._busy = 0
        self._tokens = itertools.count(1)
        self._state = _ThreadState()
        self._destroy_notify = DestroyNotify(self._on_destroy)
        self.destroy_address = function_address(self._destroy_notify)

    @property
    def live_count(self) -> int:
        """Trampolines currently held beyond a single call."""
        return len(self._live)

    @property
    def retired_count(self) -> int:
        """Retired trampolines still waiting to be dropped."""
        return len(self._retired)

    # =========================================================================
    # CallbackBridge
    # =========================================================================

    def to_native(
        self, value: Callable[..., Any], info: CallbackInfo, scope: Scope, frame: CallFrame
    ) -> Trampoline | NativeFunction:
        if isinstance(value, NativeFunction):
            return value
        plan = self._invoker.plans.get(info.signature, reverse=True)
        return self.create(plan, value, scope, frame)

    def to_host(self, address: int, info: CallbackInfo) -> Callable[..., Any]:
        trampoline = next((t for t in self._live.values() if t.address == address), None)
        if trampoline is not None:
            return trampoline.callback
        return NativeFunction(self._invoker, address, info)

    # =========================================================================
    # Lifetime
    # =========================================================================

    def create(
        self,
        plan: ArgumentPlan,
        callback: Callable[..., Any],
        scope: Scope,
        frame: CallFrame | None = None,
    ) -> Trampoline:
        with self._lock:
            trampoline = Trampoline(self, plan, callback, scope, next(self._tokens))
            if scope is Scope.CALL and frame is not None:
                frame.keep(trampoline)
                frame.defer(lambda: self.retire(trampoline))
            else:
                self._live[trampoline.token] = trampoline
                if frame is not None:
                    frame.undo(lambda: self.retire(trampoline))
        log.debug(
            "Created trampoline",
            extra={"callable": plan.name, "scope": scope.value, "token": trampoline.token},
        )
        return trampoline

    def retire(self, trampoline: Trampoline) -> None:
        """
        Stop holding ``trampoline``.

        The ctypes object itself is dropped only once no native call or
        dispatch is in progress on any thread.
        """
        with self._lock:
            self._live.pop(trampoline.token, None)
            self._retired.append(trampoline)
        self._collect()

    def _enter(self) -> None:
        with self._lock:
            self._busy += 1

    def _leave(self, collect: bool = True) -> None:
        with self._lock:
            self._busy -= 1
        if collect:
            self._collect()

    def _collect(self) -> None:
        with self._lock:
            if self._busy:
                return
            retired, self._retired = self._retired, []
        for trampoline in retired:
            trampoline.release_result()

    def _on_destroy(self, user_data: int | None) -> None:
        trampoline = self._live.get(user_data or 0)
        if trampoline is None:
            log.warning("Destroy notify for unknown trampoline", extra={"token": user_data})
            return
        log.debug(
            "Destroy notify received",
            extra={"callable": trampoline.name, "token": trampoline.token},
        )
        self.retire(trampoline)

    def clear(self) -> None:
        """Release every trampoline (engine shutdown)."""
        with self._lock:
            self._retired.extend(self._live.values())
            self._live.clear()
        self._collect()

    # =========================================================================
    # Exceptions
    # =========================================================================

    @contextmanager
    def capture(self) -> Iterator[Capture]:
        """Collect callback exceptions raised during one native call."""
        captured = Capture()
        state = self._state
        state.captures.append(captured)
        self._enter()
        try:
            yield captured
        finally:
            state.captures.pop()
            self._leave()

    def _report(self, trampoline: Trampoline, error: Exception) -> None:
        captures = self._state.captures
        if captures:
            if captures[-1].error is None:
                captures[-1].error = error
            else:
                log.error(
                    "Additional exception in callback during the same native call",
                    exc_info=(type(error), error, error.__traceback__),
                    extra={"callable": trampoline.name},
                )
            return
        log.error(
            "Exception in callback outside any native call",
            exc_info=(type(error), error, error.__traceback__),
            extra={"callable": trampoline.name},
        )

    # =========================================================================
    # Dispatch
    # =========================================================================

    def dispatch(self, trampoline: Trampoline, native_args: tuple[Any, ...]) -> Any:
        """Run the host callable for one native invocation."""
        plan = trampoline.plan
        self._enter()
        trampoline.calls += 1
        try:
            host_args = self._host_arguments(plan, native_args)
            result = trampoline.callback(*host_args)
            return self._native_result(trampoline, result)
        except Exception as e:
            self._report(trampoline, e)
            return _zero(plan)
        finally:
            # Retired while still dispatching, dropped on a later collect
            if trampoline.scope is Scope.ASYNC:
                self.retire(trampoline)
            self._leave(collect=False)

    def _host_arguments(self, plan: ArgumentPlan, native_args: tuple[Any, ...]) -> list[Any]:
        marshaller = self._invoker.marshaller
        signature = plan.signature
        host_args: list[Any] = []
        for slot in plan.slots:
            native = native_args[slot.native_index]
            if slot.role is SlotRole.INSTANCE:
                descriptor = self.instance_type(signature)
                site = Site(plan.name, "self")
                host_args.append(marshaller.to_host(native, descriptor, site=site))
            elif slot.role is SlotRole.VALUE:
                length = None
                if slot.length_index is not None:
                    length = native_args[slot.length_index]
                host_args.append(
                    marshaller.to_host(native, slot.type, length, Site(plan.name, slot.name))
                )
        return host_args

    def _native_result(self, trampoline: Trampoline, result: Any) -> Any:
        plan = trampoline.plan
        if not plan.returns_value:
            return None
        frame = CallFrame(plan.name)
        try:
            native = self._invoker.marshaller.to_native(
                result,
                plan.signature.return_type,
                frame,
                Site(plan.name, "return"),
                scope=Scope.FOREVER,
            )
        except Exception:
            frame.close()
            raise
        frame.commit()
        trampoline.hold_result(frame)
        return native

    def instance_type(self, signature: CallableSignature) -> TypeDescriptor:
        """Descriptor of the implicit instance argument of a method-shaped signature."""
        assert signature.namespace and signature.container
        name = qualify(signature.namespace, signature.container)
        info = self._invoker.marshaller.lookup(name)
        if isinstance(info, StructInfo):
            return TypeDescriptor.struct(name)
        if isinstance(info, ObjectInfo):
            return TypeDescriptor.object(name)
        return TypeDescriptor.void(pointer=True)


def _zero(plan: ArgumentPlan) -> Any:
    if not plan.returns_value:
        return None
    kind = plan.signature.return_type.kind
    if kind is TypeKind.PRIMITIVE and plan.return_ctype is not None:
        if plan.return_ctype._type_ in "fd":
            return 0.0
    return 0
