"""
Type descriptor and metadata tests.

Tests for girbridge.types: descriptor validation and normalization,
signatures, and the interface info helpers.
"""

import pytest

from girbridge.exceptions import MetadataError, UnknownMemberError
from girbridge.types import (
    VOID,
    CallableSignature,
    Direction,
    EnumInfo,
    ObjectInfo,
    ParameterSpec,
    PrimitiveTag,
    SignalInfo,
    Transfer,
    TypeDescriptor,
    TypeKind,
    qualify,
    split_qualified,
)

INT32 = TypeDescriptor.primitive(PrimitiveTag.INT32)


class TestTypeDescriptor:
    """Tests for TypeDescriptor construction rules."""

    def test_array_requires_element(self):
        """An array without an element type is rejected."""
        with pytest.raises(MetadataError):
            TypeDescriptor(TypeKind.ARRAY)

    def test_element_only_on_arrays(self):
        """Only arrays may carry an element type."""
        with pytest.raises(MetadataError):
            TypeDescriptor(TypeKind.STRING, element_type=INT32)

    def test_primitive_requires_tag(self):
        """A primitive without a tag is rejected."""
        with pytest.raises(MetadataError):
            TypeDescriptor(TypeKind.PRIMITIVE)

    def test_interface_kinds_require_name(self):
        """Objects, structs, enums and callbacks need an interface name."""
        for kind in (TypeKind.OBJECT, TypeKind.STRUCT, TypeKind.ENUM, TypeKind.CALLBACK):
            with pytest.raises(MetadataError):
                TypeDescriptor(kind)

    def test_pointer_kinds_forced(self):
        """Strings, arrays, objects and callbacks are always pointers."""
        assert TypeDescriptor.utf8().is_pointer
        assert TypeDescriptor.array(INT32).is_pointer
        assert TypeDescriptor.object("Fake.Widget").is_pointer
        assert TypeDescriptor.callback("Fake.BinaryOp").is_pointer

    def test_scalar_transfer_normalized(self):
        """Non-pointer scalars never carry a transfer."""
        descriptor = TypeDescriptor(
            TypeKind.PRIMITIVE, tag=PrimitiveTag.INT8, transfer=Transfer.FULL
        )
        assert descriptor.transfer is Transfer.NONE

    def test_negative_fixed_size_rejected(self):
        """Fixed array sizes cannot be negative."""
        with pytest.raises(MetadataError):
            TypeDescriptor.array(INT32, fixed_size=-1)

    def test_primitive_accepts_tag_name(self):
        """primitive() accepts the tag's string value."""
        assert TypeDescriptor.primitive("uint16").tag is PrimitiveTag.UINT16

    def test_with_transfer_returns_copy(self):
        """with_transfer() changes only the transfer."""
        owned = TypeDescriptor.utf8().with_transfer(Transfer.FULL)
        assert owned.transfer is Transfer.FULL
        assert owned.kind is TypeKind.STRING
        assert TypeDescriptor.utf8().with_transfer(Transfer.NONE) == TypeDescriptor.utf8()

    def test_descriptors_are_hashable(self):
        """Equal descriptors hash equally (plans are cached by them)."""
        assert hash(TypeDescriptor.array(INT32)) == hash(TypeDescriptor.array(INT32))

    def test_void_classification(self):
        """Plain void is void; gpointer is not."""
        assert VOID.is_void
        assert not TypeDescriptor.void(pointer=True).is_void

    def test_is_integer(self):
        """Only integer tags count as integers."""
        assert INT32.is_integer
        assert not TypeDescriptor.primitive(PrimitiveTag.DOUBLE).is_integer
        assert not TypeDescriptor.primitive(PrimitiveTag.BOOLEAN).is_integer

    def test_describe(self):
        """describe() names the type readably."""
        assert "int32" in TypeDescriptor.array(INT32).describe()
        assert "Fake.Widget" in str(TypeDescriptor.object("Fake.Widget"))


class TestQualifiedNames:
    """Tests for qualify() and split_qualified()."""

    def test_qualify(self):
        assert qualify("Fake", "Widget") == "Fake.Widget"

    def test_qualify_keeps_qualified(self):
        """Already qualified names are left alone."""
        assert qualify("Fake", "GObject.Object") == "GObject.Object"

    def test_split(self):
        assert split_qualified("Fake.Widget") == ("Fake", "Widget")

    def test_split_unqualified_fails(self):
        with pytest.raises(MetadataError):
            split_qualified("Widget")


class TestParameterSpec:
    """Tests for ParameterSpec."""

    def test_length_must_be_integer(self):
        """A length parameter must have an integer type."""
        with pytest.raises(MetadataError):
            ParameterSpec("n", TypeDescriptor.utf8(), length_of="values")

    def test_directions(self):
        inout = ParameterSpec("x", INT32, Direction.INOUT)
        assert inout.is_in and inout.is_out
        assert not ParameterSpec("x", INT32, Direction.OUT).is_in


class TestCallableSignature:
    """Tests for CallableSignature."""

    def test_duplicate_names_rejected(self):
        with pytest.raises(MetadataError):
            CallableSignature.build("f", [ParameterSpec("a", INT32), ParameterSpec("a", INT32)])

    def test_reserved_name_rejected(self):
        with pytest.raises(MetadataError):
            CallableSignature.build("f", [ParameterSpec("return", INT32)])

    def test_qualified_name(self):
        signature = CallableSignature.build("click", namespace="Fake", container="Button")
        assert signature.qualified_name == "Fake.Button.click"

    def test_parameter_lookup(self):
        signature = CallableSignature.build("f", [ParameterSpec("a", INT32)], returns=INT32)
        assert signature.parameter("a").type == INT32
        assert signature.parameter("return").type == INT32

    def test_unknown_parameter(self):
        signature = CallableSignature.build("f")
        with pytest.raises(UnknownMemberError):
            signature.parameter("missing")


class TestInterfaceInfos:
    """Tests for enum, object and signal metadata helpers."""

    def test_enum_accepts_members_only(self):
        info = EnumInfo("Orientation", "Fake", {"horizontal": 0, "vertical": 1})
        assert info.accepts(1)
        assert not info.accepts(2)

    def test_flags_accept_combinations(self):
        info = EnumInfo("State", "Fake", {"a": 1, "b": 2, "c": 4}, is_flags=True)
        assert info.mask == 7
        assert info.accepts(0)
        assert info.accepts(5)
        assert not info.accepts(8)

    def test_enum_storage_must_be_integer(self):
        with pytest.raises(MetadataError):
            EnumInfo("Bad", "Fake", {"a": 0}, storage=PrimitiveTag.DOUBLE)

    def test_signal_handler_signature(self):
        """The handler is a method of the owner with a trailing user data."""
        owner = ObjectInfo("Widget", "Fake")
        signal = SignalInfo("resized", (ParameterSpec("width", INT32),))
        handler = signal.handler_signature(owner)

        assert handler.is_method
        assert handler.container == "Widget"
        assert [p.name for p in handler.parameters] == ["width", "user_data"]
        assert handler.parameters[-1].closure_of == "resized"
