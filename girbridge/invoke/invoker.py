"""
NativeInvoker - performs one native call described by an ArgumentPlan.

``invoke(address, plan, host_args)``:

1. checks the host argument count against the plan
2. converts every in/inout value (``TypeMismatchError`` and friends are
   raised here), derives the synthesized length, user data and destroy
   arguments, and allocates scratch storage for out/inout slots. If any
   of this fails, references, copies and allocations already made for
   earlier arguments are given back
3. calls the function through the plan's ctypes prototype
4. raises ``NativeCallError`` if the callee set a ``GError``
5. converts the return value and out values back to host values, in the
   plan's host output order
6. releases per-call scratch memory

The call shape comes entirely from the plan; there is no per-function code.
"""

from __future__ import annotations

import ctypes
import threading
from collections.abc import Callable, Sequence
from typing import Any

from .._logging import scoped_logger
from ..exceptions import (
    ArityMismatchError,
    NativeCallError,
    TypeMismatchError,
    UnsupportedSignatureError,
)
from ..marshal import CallFrame, Site, ValueMarshaller
from ..marshal._native import GErrorStruct, vararg_ctype
from ..types import (
    CallableSignature,
    Direction,
    Scope,
    StructInfo,
    TypeDescriptor,
    TypeKind,
)
from .plan import ArgSlot, ArgumentPlan, PlanCache, SlotRole
from .trampoline import Trampoline, TrampolineFactory

log = scoped_logger("invoke")

# (instance, first_property_name, ...) of g_object_get / g_object_set
_ACCESSOR = ctypes.CFUNCTYPE(None, ctypes.c_void_p, ctypes.c_char_p)


class NativeInvoker:
    """
    Generic foreign-call executor.

    Parameters
    ----------
    marshaller : ValueMarshaller
        Converts individual values.
    plans : PlanCache
        Source of argument plans for ``call``.
    lock : threading.RLock, optional
        Engine-wide lock guarding shared tables.
    """

    def __init__(
        self,
        marshaller: ValueMarshaller,
        plans: PlanCache,
        lock: threading.RLock | None = None,
    ):
        self.marshaller = marshaller
        self.plans = plans
        self._lock = lock or threading.RLock()
        self.trampolines = TrampolineFactory(self, self._lock)
        self.error_free: Callable[[int], None] | None = None
        self._bound: dict[tuple[Any, int], Any] = {}

    def call(
        self,
        address: int,
        signature: CallableSignature,
        host_args: Sequence[Any],
        instance: int = 0,
        user_data: int = 0,
    ) -> Any:
        """Plan (or reuse the cached plan for) ``signature`` and invoke it."""
        plan = self.plans.get(signature)
        return self.invoke(address, plan, host_args, instance=instance, user_data=user_data)

    def bind(self, address: int, plan: ArgumentPlan) -> Any:
        key = (plan.signature, address)
        fn = self._bound.get(key)
        if fn is None:
            with self._lock:
                fn = self._bound.setdefault(key, plan.bind(address))
        return fn

    def call_accessor(
        self,
        address: int,
        instance: int,
        name: str,
        descriptor: TypeDescriptor,
        direction: Direction,
        value: Any = None,
        site: Site | None = None,
    ) -> Any:
        """
        Read or write one property through a variadic accessor.

        The accessor at ``address`` has the shape of ``g_object_get`` and
        ``g_object_set``: ``(instance, name, ..., NULL)``. A value being set
        is passed with C default argument promotions (``float`` as
        ``double``, narrow integers as ``int``); a value being read arrives
        through a pointer to a cell of the property's own type.

        Returns the converted value for ``Direction.OUT``, else None.
        """
        site = site or Site(name, "value")
        marshaller = self.marshaller
        ctype = marshaller.ctype_of(descriptor)
        if ctype is None:
            raise UnsupportedSignatureError(
                f"{site}: {descriptor.describe()} cannot travel through varargs",
                details=site.details(type=descriptor.describe()),
            )
        fn = self._bound.get((_ACCESSOR, address))
        if fn is None:
            with self._lock:
                fn = self._bound.setdefault((_ACCESSOR, address), _ACCESSOR(address))

        frame = CallFrame(site.callable)
        result = None
        try:
            if direction is Direction.OUT:
                cell = frame.keep(ctype())
                variadic: Any = ctypes.c_void_p(ctypes.addressof(cell))
            else:
                native = marshaller.to_native(value, descriptor, frame, site)
                variadic = vararg_ctype(ctype)(native)
            log.debug(
                "Invoking property accessor",
                extra={"callable": site.callable, "address": hex(address)},
            )
            frame.commit()
            with self.trampolines.capture() as captured:
                fn(instance, name.encode("utf-8"), variadic, ctypes.c_void_p(None))
            if direction is Direction.OUT:
                result = marshaller.to_host(cell.value, descriptor, site=site)
        finally:
            frame.close()

        if captured.error is not None:
            self.marshaller.handles.discard(result)  # type: ignore[union-attr]
            raise captured.error
        return result

    # =========================================================================
    # Invoke
    # =========================================================================

    def invoke(
        self,
        address: int,
        plan: ArgumentPlan,
        host_args: Sequence[Any],
        instance: int = 0,
        user_data: int = 0,
    ) -> Any:
        """
        Call the native function at ``address``.

        Returns None, the single output, or a tuple of outputs.

        Raises
        ------
        ArityMismatchError
            If ``host_args`` does not match the host-facing signature.
        TypeMismatchError, InvalidEnumValueError, StateError
            If an argument cannot be converted (no native call was made).
        NativeCallError
            If the callee reported a ``GError``.
        """
        host_args = tuple(host_args)
        if len(host_args) != plan.host_arity:
            raise ArityMismatchError(
                f"{plan.name}() takes {plan.host_arity} argument(s) "
                f"{plan.describe_host_signature()}, got {len(host_args)}",
                details={
                    "callable": plan.name,
                    "expected": plan.host_arity,
                    "got": len(host_args),
                },
            )
        if plan.signature.is_method and not instance:
            raise TypeMismatchError(
                f"{plan.name}() is a method and needs an instance",
                details={"callable": plan.name, "parameter": "self"},
            )

        frame = CallFrame(plan.name)
        try:
            args, scratch, in_natives, allocated = self._prepare(
                plan, host_args, frame, instance, user_data
            )
            fn = self.bind(address, plan)
            log.debug(
                "Invoking native callable",
                extra={"callable": plan.name, "address": hex(address)},
            )
            frame.commit()
            with self.trampolines.capture() as captured:
                result = fn(*args)

            if plan.signature.throws:
                self._check_error(plan, scratch, allocated)

            outputs = self._collect(plan, result, scratch, in_natives, allocated)
        finally:
            frame.close()

        if captured.error is not None:
            for value in outputs:
                self.marshaller.handles.discard(value)  # type: ignore[union-attr]
            raise captured.error

        if not outputs:
            return None
        if len(outputs) == 1:
            return outputs[0]
        return tuple(outputs)

    # -------------------------------------------------------------------------
    # Before the call
    # -------------------------------------------------------------------------

    def _prepare(
        self,
        plan: ArgumentPlan,
        host_args: tuple[Any, ...],
        frame: CallFrame,
        instance: int,
        user_data: int,
    ) -> tuple[list[Any], dict[int, Any], dict[int, Any], dict[int, int]]:
        marshaller = self.marshaller
        in_natives: dict[int, Any] = {}
        allocated: dict[int, int] = {}

        # Pass 1: convert host values, derive lengths and callback companions
        for index in plan.host_inputs:
            slot = plan.slots[index]
            assert slot.host_index is not None
            value = host_args[slot.host_index]
            site = Site(plan.name, slot.name)
            if slot.type.kind is TypeKind.CALLBACK:
                self._prepare_callback(slot, value, frame, site, in_natives)
                continue
            in_natives[index] = marshaller.to_native(value, slot.type, frame, site, slot.scope)
            if slot.length_index is not None:
                self._record_length(plan, slot, value, in_natives)

        # Pass 2: lay out every native slot
        args: list[Any] = []
        scratch: dict[int, Any] = {}
        for slot in plan.slots:
            index = slot.native_index
            if slot.role is SlotRole.INSTANCE:
                args.append(instance)
                continue
            if slot.role is SlotRole.ERROR:
                error = frame.keep(ctypes.c_void_p(0))
                scratch[index] = error
                args.append(ctypes.addressof(error))
                continue
            if slot.role is SlotRole.LENGTH and slot.is_in:
                in_natives.setdefault(index, 0)
            elif slot.role is SlotRole.USER_DATA and slot.callback_index is None:
                in_natives[index] = user_data
            elif slot.role in (SlotRole.USER_DATA, SlotRole.DESTROY):
                in_natives.setdefault(index, 0)

            if slot.struct_size:
                buffer = marshaller.allocator.alloc(slot.struct_size)
                allocated[index] = buffer
                args.append(buffer)
            elif slot.by_reference:
                cell = frame.keep(slot.value_ctype())
                if slot.spec is not None and slot.spec.direction is Direction.INOUT:
                    cell.value = in_natives.get(index, 0)
                scratch[index] = cell
                args.append(ctypes.addressof(cell))
            else:
                args.append(in_natives.get(index, 0))
        return args, scratch, in_natives, allocated

    def _prepare_callback(
        self,
        slot: ArgSlot,
        value: Any,
        frame: CallFrame,
        site: Site,
        in_natives: dict[int, Any],
    ) -> None:
        if value is None:
            if not slot.type.is_nullable:
                raise TypeMismatchError(
                    f"{site} is not nullable, got None",
                    details=site.details(expected=slot.type.describe()),
                )
            in_natives[slot.native_index] = 0
            return
        target = self.marshaller.callback_to_native(value, slot.type, frame, site, slot.scope)
        in_natives[slot.native_index] = target.address
        if isinstance(target, Trampoline):
            data = target.token
            destroy = self.trampolines.destroy_address if slot.scope is Scope.NOTIFIED else 0
        else:
            data = target.user_data
            destroy = 0
        if slot.user_data_index is not None:
            in_natives[slot.user_data_index] = data
        if slot.destroy_index is not None:
            in_natives[slot.destroy_index] = destroy

    def _record_length(
        self, plan: ArgumentPlan, slot: ArgSlot, value: Any, in_natives: dict[int, Any]
    ) -> None:
        assert slot.length_index is not None
        length = 0 if value is None else len(value)
        known = in_natives.get(slot.length_index)
        if known is not None and known != length:
            length_slot = plan.slots[slot.length_index]
            raise TypeMismatchError(
                f"{plan.name}: arrays sized by '{length_slot.name}' must have equal "
                f"lengths, '{slot.name}' has {length} but another has {known}",
                details={"callable": plan.name, "parameter": slot.name, "length": length},
            )
        in_natives[slot.length_index] = length

    # -------------------------------------------------------------------------
    # After the call
    # -------------------------------------------------------------------------

    def _check_error(
        self, plan: ArgumentPlan, scratch: dict[int, Any], allocated: dict[int, int]
    ) -> None:
        error_slot = plan.slots[-1]
        address = scratch[error_slot.native_index].value
        if not address:
            return
        error = GErrorStruct.from_address(address)
        message = error.message.decode("utf-8", errors="replace") if error.message else ""
        domain, code = error.domain, error.code
        self._free_error(address)
        for buffer in allocated.values():
            self.marshaller.allocator.free(buffer)
        log.debug(
            "Native callable reported an error",
            extra={"callable": plan.name, "domain": domain, "error_code": code},
        )
        raise NativeCallError(
            message or f"{plan.name} failed",
            domain=domain,
            error_code=code,
            details={"callable": plan.name},
        )

    def _free_error(self, address: int) -> None:
        if self.error_free is not None:
            self.error_free(address)
            return
        allocator = self.marshaller.allocator
        message = ctypes.c_void_p.from_address(address + GErrorStruct.message.offset).value
        allocator.free(message or 0)
        allocator.free(address)

    def _collect(
        self,
        plan: ArgumentPlan,
        result: Any,
        scratch: dict[int, Any],
        in_natives: dict[int, Any],
        allocated: dict[int, int],
    ) -> list[Any]:
        marshaller = self.marshaller

        def length_of(index: int | None) -> int | None:
            if index is None:
                return None
            if index in scratch:
                return int(scratch[index].value or 0)
            return int(in_natives.get(index, 0))

        outputs: list[Any] = []
        for index in plan.host_outputs:
            if index == ArgumentPlan.RETURN:
                descriptor = plan.signature.return_type
                outputs.append(
                    marshaller.to_host(
                        result,
                        descriptor,
                        length_of(plan.return_length_index),
                        Site(plan.name, "return"),
                    )
                )
                continue
            slot = plan.slots[index]
            site = Site(plan.name, slot.name)
            if index in allocated:
                info = marshaller.interface(slot.type)
                assert isinstance(info, StructInfo)
                handles = marshaller.handles
                assert handles is not None
                outputs.append(handles.adopt_buffer(allocated.pop(index), info))
                continue
            native = scratch[index].value
            length = length_of(slot.length_index)
            outputs.append(marshaller.to_host(native, slot.type, length, site))
        return outputs
