"""
ArgumentPlan - the native call shape derived once per callable signature.

Building a plan:

1. lays out native slots in metadata order (instance first for methods,
   ``GError **`` last for throwing callables)
2. pairs every array with its length source: an explicit ``length_of``
   parameter, else the nearest adjacent unclaimed integer parameter with a
   compatible direction, else zero termination or a fixed size
3. hides synthesized parameters (lengths, callback user data and destroy
   notifies) from the host-facing signature
4. orders host inputs (``in``/``inout`` in native order) and host outputs
   (return value, then out/inout values in native order, then out/inout
   lengths in native order)
5. rejects every unrepresentable combination with
   ``UnsupportedSignatureError``, so nothing is left to fail mid-call

Plans are immutable and safe to share between threads and re-entrant calls.
``build_plan(..., reverse=True)`` builds the plan for a callback or signal
handler whose arguments flow native -> host.
"""

from __future__ import annotations

import ctypes
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .._logging import scoped_logger
from ..exceptions import GirError, UnsupportedSignatureError
from ..marshal._native import scalar_ctype
from ..types import (
    RETURN_NAME,
    CallableSignature,
    CallbackInfo,
    Direction,
    EnumInfo,
    InterfaceInfo,
    ObjectInfo,
    ParameterSpec,
    Scope,
    StructInfo,
    TypeDescriptor,
    TypeKind,
)

log = scoped_logger("invoke")

InterfaceLookup = Callable[[str], InterfaceInfo]


class SlotRole(Enum):
    """What fills a native argument slot."""

    INSTANCE = "instance"
    VALUE = "value"
    LENGTH = "length"
    USER_DATA = "user_data"
    DESTROY = "destroy"
    ERROR = "error"


@dataclass(frozen=True)
class ArgSlot:
    """
    One native argument.

    Attributes
    ----------
    native_index : int
        Position in the native call.
    role : SlotRole
        What supplies the value.
    spec : ParameterSpec, optional
        The parameter (None for the instance and error slots).
    ctype : ctypes type
        Type passed to the foreign call (``c_void_p`` for anything passed
        by reference).
    value_ctype : ctypes type, optional
        Type of the value itself; for out/inout slots the type of the
        scratch storage whose address is passed.
    host_index : int, optional
        Position in the host argument list (in/inout values only).
    length_index : int, optional
        Arrays: native index of the length slot.
    sized : tuple of int
        Lengths: native indices of the arrays sized (``-1`` = return value).
    callback_index : int, optional
        User data / destroy slots: native index of their callback.
    user_data_index, destroy_index : int, optional
        Callback slots: native indices of their companions.
    struct_size : int
        Caller-allocated out structs: bytes to allocate.
    """

    native_index: int
    role: SlotRole
    spec: ParameterSpec | None
    ctype: Any
    value_ctype: Any = None
    host_index: int | None = None
    length_index: int | None = None
    sized: tuple[int, ...] = ()
    callback_index: int | None = None
    user_data_index: int | None = None
    destroy_index: int | None = None
    struct_size: int = 0

    @property
    def name(self) -> str:
        if self.spec is not None:
            return self.spec.name
        return self.role.value

    @property
    def type(self) -> TypeDescriptor:
        assert self.spec is not None
        return self.spec.type

    @property
    def is_in(self) -> bool:
        return self.spec is None or self.spec.is_in

    @property
    def is_out(self) -> bool:
        return self.spec is not None and self.spec.is_out

    @property
    def by_reference(self) -> bool:
        """True when the callee receives the address of scratch storage."""
        return self.is_out and not self.struct_size

    @property
    def scope(self) -> Scope:
        assert self.spec is not None
        return self.spec.scope


@dataclass(frozen=True)
class ArgumentPlan:
    """Immutable native call shape for one ``CallableSignature``."""

    signature: CallableSignature
    slots: tuple[ArgSlot, ...]
    host_inputs: tuple[int, ...]
    host_outputs: tuple[int, ...]
    return_ctype: Any
    return_length_index: int | None
    reverse: bool = False
    prototype: Any = field(default=None, compare=False, repr=False)

    RETURN = -1

    @property
    def name(self) -> str:
        return self.signature.qualified_name

    @property
    def host_arity(self) -> int:
        return len(self.host_inputs)

    @property
    def returns_value(self) -> bool:
        return not self.signature.return_type.is_void

    def slot_for(self, name: str) -> ArgSlot:
        return next(s for s in self.slots if s.spec is not None and s.spec.name == name)

    def bind(self, address: int) -> Any:
        """Return a ctypes function calling ``address`` with this plan's shape."""
        return self.prototype(address)

    def describe_host_signature(self) -> str:
        """Host-facing call shape, e.g. ``(argv: array<utf8>) -> (array<utf8>, int32)``."""
        inputs = ", ".join(
            f"{self.slots[i].name}: {self.slots[i].type.describe()}" for i in self.host_inputs
        )
        outputs = [
            (self.signature.return_type if i == self.RETURN else self.slots[i].type).describe()
            for i in self.host_outputs
        ]
        if not outputs:
            result = "None"
        elif len(outputs) == 1:
            result = outputs[0]
        else:
            result = f"({', '.join(outputs)})"
        return f"({inputs}) -> {result}"


# =============================================================================
# Builder
# =============================================================================


class _Builder:
    def __init__(self, signature: CallableSignature, interfaces: InterfaceLookup, reverse: bool):
        self.signature = signature
        self.interfaces = interfaces
        self.reverse = reverse
        self.name = signature.qualified_name
        self.params = signature.parameters
        self.index_of = {p.name: i for i, p in enumerate(self.params)}
        self.offset = 1 if signature.is_method else 0

    def fail(self, message: str, parameter: str | None = None) -> UnsupportedSignatureError:
        details: dict[str, Any] = {"callable": self.name}
        if parameter is not None:
            details["parameter"] = parameter
            message = f"{self.name}: parameter '{parameter}': {message}"
        else:
            message = f"{self.name}: {message}"
        return UnsupportedSignatureError(message, details=details)

    def lookup(self, descriptor: TypeDescriptor, expected: type, parameter: str) -> Any:
        assert descriptor.interface is not None
        try:
            info = self.interfaces(descriptor.interface)
        except GirError as e:
            raise self.fail(f"unknown type {descriptor.interface}", parameter) from e
        if not isinstance(info, expected):
            raise self.fail(
                f"{descriptor.interface} is not a {expected.__name__}", parameter
            )
        return info

    # -------------------------------------------------------------------------
    # Type validation
    # -------------------------------------------------------------------------

    def check_type(self, descriptor: TypeDescriptor, parameter: str, element: bool = False) -> None:
        kind = descriptor.kind
        if kind is TypeKind.VOID and not descriptor.is_pointer:
            raise self.fail("void is not a value type", parameter)
        if kind is TypeKind.STRUCT:
            self.lookup(descriptor, StructInfo, parameter)
            if not descriptor.is_pointer:
                raise self.fail(f"{descriptor.interface} passed by value", parameter)
        elif kind is TypeKind.OBJECT:
            self.lookup(descriptor, ObjectInfo, parameter)
        elif kind is TypeKind.ENUM:
            self.lookup(descriptor, EnumInfo, parameter)
        elif kind is TypeKind.CALLBACK:
            if element:
                raise self.fail("arrays of callbacks", parameter)
            info = self.lookup(descriptor, CallbackInfo, parameter)
            # The callback's own shape must be representable too
            build_plan(info.signature, self.interfaces, reverse=True)
        elif kind is TypeKind.ARRAY:
            inner = descriptor.element_type
            assert inner is not None
            sized = inner.zero_terminated or inner.fixed_size is not None
            if inner.kind is TypeKind.ARRAY and not sized:
                raise self.fail(
                    "array of arrays without a per-element length", parameter
                )
            self.check_type(inner, parameter, element=True)

    # -------------------------------------------------------------------------
    # Pairings
    # -------------------------------------------------------------------------

    def explicit_lengths(self) -> dict[str, str]:
        """Map array name (or ``"return"``) -> length parameter name."""
        lengths: dict[str, str] = {}
        for param in self.params:
            if param.length_of is None:
                continue
            target = param.length_of
            if target == RETURN_NAME:
                target_type = self.signature.return_type
            elif target in self.index_of:
                target_type = self.params[self.index_of[target]].type
            else:
                raise self.fail(f"sizes unknown parameter '{target}'", param.name)
            if target_type.kind is not TypeKind.ARRAY:
                raise self.fail(f"sizes '{target}', which is not an array", param.name)
            if target in lengths:
                raise self.fail(f"array '{target}' has two length parameters", param.name)
            lengths[target] = param.name
        return lengths

    def infer_lengths(self, lengths: dict[str, str], reserved: set[str]) -> None:
        claimed = set(lengths.values())
        for i, param in enumerate(self.params):
            t = param.type
            if t.kind is not TypeKind.ARRAY or param.name in lengths:
                continue
            if t.zero_terminated or t.fixed_size is not None:
                continue
            for j in (i + 1, i - 1):
                if not 0 <= j < len(self.params):
                    continue
                candidate = self.params[j]
                if (
                    candidate.type.is_integer
                    and candidate.name not in claimed
                    and candidate.name not in reserved
                    and self.compatible(param.direction, candidate.direction)
                ):
                    lengths[param.name] = candidate.name
                    claimed.add(candidate.name)
                    break

    @staticmethod
    def compatible(array: Direction | None, length: Direction) -> bool:
        """``array`` is None for the return value."""
        if length is Direction.IN:
            return array in (Direction.IN, Direction.INOUT)
        if length is Direction.OUT:
            return array is None or array is Direction.OUT
        return array is Direction.INOUT

    def callbacks(self) -> tuple[dict[str, str], dict[str, str]]:
        """Map callback name -> user data name / destroy name."""
        user_data: dict[str, str] = {}
        destroy: dict[str, str] = {}
        for param in self.params:
            for target, table, what in (
                (param.closure_of, user_data, "user data"),
                (param.destroy_of, destroy, "destroy notify"),
            ):
                if target is None:
                    continue
                if table is user_data and (self.reverse or target not in self.index_of):
                    # Marks the callable's own user data, not a callback's
                    user_data.setdefault(target, param.name)
                    continue
                if target not in self.index_of:
                    raise self.fail(f"is the {what} of unknown parameter '{target}'", param.name)
                if self.params[self.index_of[target]].type.kind is not TypeKind.CALLBACK:
                    raise self.fail(
                        f"is the {what} of '{target}', which is not a callback", param.name
                    )
                if param.direction is not Direction.IN:
                    raise self.fail(f"{what} must be an in parameter", param.name)
                table[target] = param.name
        return user_data, destroy

    # -------------------------------------------------------------------------
    # Build
    # -------------------------------------------------------------------------

    def build(self) -> ArgumentPlan:
        signature = self.signature
        return_type = signature.return_type

        if self.reverse and signature.throws:
            raise self.fail("callbacks cannot report errors")
        if not return_type.is_void:
            self.check_type(return_type, RETURN_NAME)
        for param in self.params:
            self.check_type(param.type, param.name)
            if self.reverse and param.direction is not Direction.IN:
                raise self.fail("out parameters in callbacks", param.name)
            if param.caller_allocates:
                if param.direction is not Direction.OUT or param.type.kind is not TypeKind.STRUCT:
                    raise self.fail("caller-allocates applies only to out structs", param.name)
            if param.type.kind is TypeKind.CALLBACK and param.direction is not Direction.IN:
                raise self.fail("callbacks must be in parameters", param.name)

        user_data, destroy = self.callbacks()
        reserved = set(user_data.values()) | set(destroy.values())
        lengths = self.explicit_lengths()
        self.infer_lengths(lengths, reserved)

        # array name -> length name, validated for direction
        length_users: dict[str, list[str]] = {}
        for array, length in lengths.items():
            length_param = self.params[self.index_of[length]]
            array_dir = (
                None if array == RETURN_NAME else self.params[self.index_of[array]].direction
            )
            if not self.compatible(array_dir, length_param.direction):
                raise self.fail(
                    f"length '{length}' ({length_param.direction.value}) cannot size "
                    f"'{array}' ({array_dir.value if array_dir else 'return'})",
                    length,
                )
            length_users.setdefault(length, []).append(array)

        # every array needs a length source
        arrays = [(p.name, p.type) for p in self.params if p.type.kind is TypeKind.ARRAY]
        if return_type.kind is TypeKind.ARRAY:
            arrays.append((RETURN_NAME, return_type))
        for name, t in arrays:
            if name not in lengths and not t.zero_terminated and t.fixed_size is None:
                raise self.fail("array has no length, zero terminator or fixed size", name)

        def native(name: str) -> int:
            return -1 if name == RETURN_NAME else self.index_of[name] + self.offset

        slots: list[ArgSlot] = []
        if signature.is_method:
            slots.append(ArgSlot(0, SlotRole.INSTANCE, None, ctypes.c_void_p, ctypes.c_void_p))

        callback_of_user_data = {v: k for k, v in user_data.items()}
        callback_of_destroy = {v: k for k, v in destroy.items()}
        host_inputs: list[int] = []
        value_outputs: list[int] = []
        length_outputs: list[int] = []

        for i, param in enumerate(self.params):
            index = i + self.offset
            value_ctype = self.value_ctype(param.type)
            by_ref = param.is_out and not param.caller_allocates
            ctype = ctypes.c_void_p if by_ref else value_ctype
            kwargs: dict[str, Any] = {}
            if param.name in length_users:
                role = SlotRole.LENGTH
                kwargs["sized"] = tuple(native(a) for a in length_users[param.name])
            elif param.name in callback_of_user_data:
                role = SlotRole.USER_DATA
                target = callback_of_user_data[param.name]
                if not self.reverse and target in self.index_of:
                    kwargs["callback_index"] = native(target)
            elif param.name in callback_of_destroy:
                role = SlotRole.DESTROY
                kwargs["callback_index"] = native(callback_of_destroy[param.name])
            else:
                role = SlotRole.VALUE
                if param.name in lengths:
                    kwargs["length_index"] = native(lengths[param.name])
                if param.type.kind is TypeKind.CALLBACK:
                    if param.name in user_data:
                        kwargs["user_data_index"] = native(user_data[param.name])
                    if param.name in destroy:
                        kwargs["destroy_index"] = native(destroy[param.name])
                    if param.scope is Scope.NOTIFIED and "destroy_index" not in kwargs:
                        raise self.fail("notified callback without a destroy notify", param.name)
                if param.caller_allocates:
                    info = self.lookup(param.type, StructInfo, param.name)
                    kwargs["struct_size"] = info.size
                if param.is_in:
                    kwargs["host_index"] = len(host_inputs)
                    host_inputs.append(index)
            if param.is_out:
                (length_outputs if role is SlotRole.LENGTH else value_outputs).append(index)
            slots.append(ArgSlot(index, role, param, ctype, value_ctype, **kwargs))

        if signature.throws:
            slots.append(
                ArgSlot(len(slots), SlotRole.ERROR, None, ctypes.c_void_p, ctypes.c_void_p)
            )

        return_ctype = None
        if not return_type.is_void:
            return_ctype = self.value_ctype(return_type)

        host_outputs = tuple(
            ([ArgumentPlan.RETURN] if not return_type.is_void else [])
            + value_outputs
            + length_outputs
        )
        return_length = lengths.get(RETURN_NAME)
        prototype = ctypes.CFUNCTYPE(return_ctype, *(slot.ctype for slot in slots))

        plan = ArgumentPlan(
            signature=signature,
            slots=tuple(slots),
            host_inputs=tuple(host_inputs),
            host_outputs=host_outputs,
            return_ctype=return_ctype,
            return_length_index=native(return_length) if return_length else None,
            reverse=self.reverse,
            prototype=prototype,
        )
        log.debug(
            "Built argument plan %s",
            plan.describe_host_signature(),
            extra={"callable": self.name, "reverse": self.reverse},
        )
        return plan

    def value_ctype(self, descriptor: TypeDescriptor) -> Any:
        storage = None
        if descriptor.kind is TypeKind.ENUM and not descriptor.is_pointer:
            storage = self.lookup(descriptor, EnumInfo, descriptor.describe()).storage
        return scalar_ctype(descriptor, storage)


def build_plan(
    signature: CallableSignature, interfaces: InterfaceLookup, reverse: bool = False
) -> ArgumentPlan:
    """
    Build the argument plan for ``signature``.

    Raises
    ------
    UnsupportedSignatureError
        If any parameter or the return value cannot be marshalled.
    """
    return _Builder(signature, interfaces, reverse).build()


class PlanCache:
    """
    Process-wide plan cache keyed by signature.

    Populated on first use and cleared only by ``clear()`` (engine
    shutdown). Failed builds are not cached, so the error is raised again
    on every attempt.
    """

    def __init__(self, interfaces: InterfaceLookup, lock: threading.RLock | None = None):
        self._interfaces = interfaces
        self._plans: dict[tuple[CallableSignature, bool], ArgumentPlan] = {}
        self._lock = lock or threading.RLock()

    def get(self, signature: CallableSignature, reverse: bool = False) -> ArgumentPlan:
        key = (signature, reverse)
        plan = self._plans.get(key)
        if plan is not None:
            return plan
        with self._lock:
            plan = self._plans.get(key)
            if plan is None:
                plan = build_plan(signature, self._interfaces, reverse)
                self._plans[key] = plan
        return plan

    def __len__(self) -> int:
        return len(self._plans)

    def __contains__(self, signature: object) -> bool:
        return (signature, False) in self._plans or (signature, True) in self._plans

    def clear(self) -> None:
        with self._lock:
            self._plans.clear()
