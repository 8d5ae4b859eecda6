"""
NativeInvoker tests.

Forward calls into the fake library: argument conversion, synthesized
lengths, out values, result shapes and GError reporting.
"""

import ctypes
import threading

import pytest

from girbridge import (
    ArityMismatchError,
    CallableSignature,
    Direction,
    InvalidEnumValueError,
    NativeCallError,
    OwnershipState,
    ParameterSpec,
    PrimitiveTag,
    Scope,
    StructWrapper,
    Transfer,
    TypeDescriptor,
    TypeMismatchError,
    UnknownMemberError,
)
from tests.fixtures.native import (
    ERROR_CODE,
    ERROR_DOMAIN,
    ERROR_MESSAGE,
    MESSAGE_FUNC,
    NS,
    POINT,
    WIDGET,
)

INT32 = TypeDescriptor.primitive(PrimitiveTag.INT32)


def taking(*params):
    """Signature of a function taking ``params`` and a trailing int32."""
    return CallableSignature.build(
        "take", [*params, ParameterSpec("n", INT32)], symbol="fake_take", namespace=NS
    )


class TestScalars:
    """Plain in/return values."""

    def test_double_and_float(self, engine):
        assert engine.invoke_by_name(NS, "scale", [2.0, 1.5]) == 3.0

    def test_unichar(self, engine):
        assert engine.invoke_by_name(NS, "char_upper", ["a"]) == "A"

    def test_enum_round_trip(self, engine):
        result = engine.invoke_by_name(NS, "orientation_flip", ["horizontal"])
        assert result.name == "VERTICAL"
        assert engine.invoke_by_name(NS, "orientation_flip", [result]) == 0

    def test_invalid_enum_not_called(self, engine, fake):
        with pytest.raises(InvalidEnumValueError):
            engine.invoke_by_name(NS, "orientation_flip", [7])
        assert fake.calls["fake_orientation_flip"] == 0

    def test_flags(self, engine):
        assert engine.invoke_by_name(NS, "state_count", [1 | 4]) == 2
        with pytest.raises(InvalidEnumValueError):
            engine.invoke_by_name(NS, "state_count", [8])


class TestArrays:
    """Arrays with synthesized lengths."""

    def test_length_synthesized(self, engine):
        assert engine.invoke_by_name(NS, "sum", [[1, 2, 3, 4]]) == 10

    def test_empty_array(self, engine):
        assert engine.invoke_by_name(NS, "sum", [[]]) == 0

    def test_tuple_accepted(self, engine):
        assert engine.invoke_by_name(NS, "sum", [(5, 6)]) == 11

    def test_int64_return(self, engine):
        big = 2**31 - 1
        assert engine.invoke_by_name(NS, "sum", [[big, big]]) == 2 * big

    def test_bad_element_not_called(self, engine, fake):
        """Conversion errors are raised before the native call."""
        with pytest.raises(TypeMismatchError) as exc_info:
            engine.invoke_by_name(NS, "sum", [[1, "two"]])
        assert exc_info.value.details["callable"] == "Fake.sum"
        assert exc_info.value.details["parameter"] == "values[1]"
        assert fake.calls["fake_sum"] == 0

    def test_inout_array_and_length(self, engine):
        """argv comes back filtered, followed by the updated argc."""
        result = engine.invoke_by_name(
            NS, "parse_args", [["--display", ":0", "argument1", "argument2"]]
        )
        assert result == (["argument1", "argument2"], 2)

    def test_out_array_and_length(self, engine):
        assert engine.invoke_by_name(NS, "range", [3, 10]) == ([10, 11, 12], 3)

    def test_zero_terminated_return(self, engine):
        assert engine.invoke_by_name(NS, "split", ["a,b,c", ","]) == ["a", "b", "c"]

    def test_zero_terminated_argument(self, engine):
        assert engine.invoke_by_name(NS, "join", [["hello", "world"]]) == "hello world"


class TestOutValues:
    """Out parameters and result shapes."""

    def test_two_outs(self, engine):
        assert engine.invoke_by_name(NS, "divmod", [17, 5]) == (3, 2)

    def test_no_outputs_is_none(self, engine):
        assert engine.invoke_by_name(NS, "clear_notify") is None

    def test_single_output_is_bare(self, engine):
        assert engine.invoke_by_name(NS, "join", [["x"]]) == "x"

    def test_caller_allocated_struct(self, engine, fake):
        point = engine.invoke_by_name(NS, "point_init", [3, 4])

        assert isinstance(point, StructWrapper)
        assert point.state is OwnershipState.OWNED
        assert (point.get_field("x"), point.get_field("y"), point.get_field("id")) == (3, 4, 7)

        point.release()
        # Engine allocated it, so the library's free function is not involved
        assert fake.freed_points == []


class TestErrors:
    """GError reporting."""

    def test_success(self, engine, fake):
        assert engine.invoke_by_name(NS, "may_fail", [False]) == 99
        assert fake.errors_freed == 0

    def test_gerror_raised_and_freed(self, engine, fake):
        with pytest.raises(NativeCallError) as exc_info:
            engine.invoke_by_name(NS, "may_fail", [True])

        error = exc_info.value
        assert str(error) == ERROR_MESSAGE
        assert error.domain == ERROR_DOMAIN
        assert error.error_code == ERROR_CODE
        assert error.details["callable"] == "Fake.may_fail"
        assert fake.errors_freed == 1

    def test_error_free_falls_back_to_allocator(self, repository, fake):
        """Without a GLib error free function the allocator frees the GError."""
        from girbridge import Engine, EngineConfig

        engine = Engine(repository, EngineConfig(error_free="GLib.missing_error_free"))
        try:
            with pytest.raises(NativeCallError):
                engine.invoke_by_name(NS, "may_fail", [True])
            assert fake.errors_freed == 0
        finally:
            engine.close()


class TestArity:
    """Host argument count checks."""

    def test_too_few(self, engine):
        with pytest.raises(ArityMismatchError) as exc_info:
            engine.invoke_by_name(NS, "divmod", [1])
        assert exc_info.value.details == {"callable": "Fake.divmod", "expected": 2, "got": 1}

    def test_too_many(self, engine):
        with pytest.raises(ArityMismatchError):
            engine.invoke_by_name(NS, "sum", [[1], 1])

    def test_message_shows_host_signature(self, engine):
        with pytest.raises(ArityMismatchError, match=r"\(values: array<int32>\) -> int64"):
            engine.invoke_by_name(NS, "sum", [])

    def test_arity_is_a_type_error(self, engine):
        with pytest.raises(TypeError):
            engine.invoke_by_name(NS, "scale", [])


class TestLookup:
    """Resolving callables by name."""

    def test_unknown_function(self, engine):
        with pytest.raises(UnknownMemberError):
            engine.invoke_by_name(NS, "no_such_function", [])

    def test_unknown_method(self, engine):
        with pytest.raises(UnknownMemberError):
            engine.invoke_by_name(NS, "Widget.explode", [])

    def test_missing_symbol(self, engine, repository):
        repository.add_callable(
            CallableSignature.build("ghost", symbol="fake_ghost", namespace=NS)
        )
        with pytest.raises(UnknownMemberError):
            engine.invoke_by_name(NS, "ghost", [])

    def test_constructor(self, engine, fake):
        widget = engine.invoke_by_name(NS, "Widget.new", ["hello"])
        assert widget.type_name == "Fake.Widget"
        assert fake.objects[widget.address].label.value == b"hello"

    def test_method_needs_instance(self, engine):
        with pytest.raises(ArityMismatchError):
            engine.invoke_by_name(NS, "Widget.resize", [])

    def test_method_instance_must_be_wrapper(self, engine):
        with pytest.raises(TypeMismatchError):
            engine.invoke_by_name(NS, "Widget.resize", [42, 1, 2])

    def test_method_instance_type_checked(self, engine):
        gadget = engine.invoke_by_name(NS, "gadget_new")
        with pytest.raises(TypeMismatchError):
            engine.invoke_by_name(NS, "Widget.get_label", [gadget])

    def test_method_by_name(self, engine):
        widget = engine.invoke_by_name(NS, "Widget.new", ["by name"])
        assert engine.invoke_by_name(NS, "Widget.get_label", [widget]) == "by name"


class TestConcurrency:
    """Plans are shared between threads."""

    def test_parallel_calls(self, engine):
        errors = []
        results = []

        def worker(n):
            try:
                for i in range(25):
                    results.append(engine.invoke_by_name(NS, "divmod", [n * 100 + i, 7]))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(results) == 100
        assert len(engine.plans) == 1


class TestLogging:
    """Calls are traced at DEBUG."""

    def test_invoke_logged(self, engine, captured_logs):
        engine.invoke_by_name(NS, "divmod", [7, 2])

        records = [r for r in captured_logs.records if r.getMessage() == "Invoking native callable"]
        assert records
        assert records[-1].callable == "Fake.divmod"
        assert records[-1].scope == "invoke"



class TestRollback:
    """A rejected argument gives back what earlier arguments handed over."""

    @pytest.fixture
    def address(self, fake):
        # Never reached: every call below fails before the native call
        return fake.address_of(NS, "fake_clear_notify")

    def test_object_reference(self, engine, fake, address):
        widget = engine.invoke_by_name(NS, "Widget.new", ["given"])
        signature = taking(ParameterSpec("w", TypeDescriptor.object(WIDGET, Transfer.FULL)))

        with pytest.raises(TypeMismatchError):
            engine.invoker.call(address, signature, [widget, "not-an-int"])

        assert fake.refs(widget.address) == 1
        assert widget.handle.owned_refs == 1
        assert fake.calls["fake_clear_notify"] == 0

    def test_struct_copy(self, engine, fake, address):
        point = engine.invoke_by_name(NS, "Point.new", [1, 2])
        signature = taking(ParameterSpec("p", TypeDescriptor.struct(POINT, Transfer.FULL)))

        with pytest.raises(TypeMismatchError):
            engine.invoker.call(address, signature, [point, None])

        assert fake.points == {point.address}
        assert len(fake.freed_points) == 1
        assert point.state is OwnershipState.OWNED

    def test_strings_and_arrays(self, engine, address, monkeypatch):
        allocator = engine.marshaller.allocator
        alloc, free = allocator.alloc, allocator.free
        live = set()

        def tracking_alloc(size):
            address = alloc(size)
            live.add(address)
            return address

        def tracking_free(address):
            live.discard(address)
            free(address)

        monkeypatch.setattr(allocator, "alloc", tracking_alloc)
        monkeypatch.setattr(allocator, "free", tracking_free)
        owned_utf8 = TypeDescriptor.utf8(Transfer.FULL)
        signature = taking(
            ParameterSpec("s", owned_utf8),
            ParameterSpec("v", TypeDescriptor.array(owned_utf8, Transfer.FULL, fixed_size=2)),
        )

        with pytest.raises(TypeMismatchError):
            engine.invoker.call(address, signature, ["one", ["two", "three"], 2.5])

        assert live == set()

    def test_notified_callback(self, engine, address):
        signature = taking(
            ParameterSpec(
                "func", TypeDescriptor.callback(MESSAGE_FUNC), scope=Scope.NOTIFIED
            ),
            ParameterSpec("user_data", TypeDescriptor.void(pointer=True), closure_of="func"),
            ParameterSpec("destroy", TypeDescriptor.void(pointer=True), destroy_of="func"),
        )

        with pytest.raises(TypeMismatchError):
            engine.invoker.call(address, signature, [print, "not-an-int"])

        assert engine.invoker.trampolines.live_count == 0


class TestAccessors:
    """Property values passed through ``(instance, name, ..., NULL)``."""

    @staticmethod
    def accessor(value_ctype, implementation):
        prototype = ctypes.CFUNCTYPE(
            None, ctypes.c_void_p, ctypes.c_char_p, value_ctype, ctypes.c_void_p
        )
        function = prototype(implementation)
        return function, ctypes.cast(function, ctypes.c_void_p).value

    def test_float_set_as_double(self, engine):
        received = []
        function, address = self.accessor(
            ctypes.c_double, lambda instance, name, value, end: received.append((name, value))
        )
        engine.invoker.call_accessor(
            address,
            0,
            "ratio",
            TypeDescriptor.primitive(PrimitiveTag.FLOAT),
            Direction.IN,
            0.5,
        )

        assert received == [(b"ratio", 0.5)]

    def test_narrow_integer_set_as_int(self, engine):
        received = []
        function, address = self.accessor(
            ctypes.c_int, lambda instance, name, value, end: received.append(value)
        )
        engine.invoker.call_accessor(
            address, 0, "level", TypeDescriptor.primitive(PrimitiveTag.INT8), Direction.IN, -5
        )

        assert received == [-5]

    def test_float_read_through_cell(self, engine):
        def get(instance, name, value, end):
            ctypes.c_float.from_address(value).value = 0.25

        function, address = self.accessor(ctypes.c_void_p, get)
        result = engine.invoker.call_accessor(
            address, 0, "ratio", TypeDescriptor.primitive(PrimitiveTag.FLOAT), Direction.OUT
        )

        assert result == 0.25

    def test_value_checked_against_property_type(self, engine):
        function, address = self.accessor(ctypes.c_int, lambda *args: None)
        with pytest.raises(TypeMismatchError):
            engine.invoker.call_accessor(
                address, 0, "level", TypeDescriptor.primitive(PrimitiveTag.INT8), Direction.IN, 300
            )
