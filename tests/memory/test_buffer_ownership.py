"""
Buffer ownership tests.

Every buffer that crosses the boundary with transfer ``full`` is freed
exactly once: by the engine after conversion, by an explicit release, or
by native code for memory it owns. The counting allocator is shared by the
engine and the fake library, so a balance of zero means no leak and no
double free.
"""

import gc

import pytest

from girbridge import NativeCallError
from tests.fixtures.native import NS


class TestTransferFull:
    """Returned buffers are freed after conversion."""

    def test_string_return(self, counted_engine, allocator):
        widget = counted_engine.invoke_by_name(NS, "Widget.new", ["owned label"])
        before = allocator.balance

        assert widget.invoke("dup_label") == "owned label"
        assert allocator.balance == before

    def test_zero_terminated_array(self, counted_engine, allocator):
        assert counted_engine.invoke_by_name(NS, "split", ["x:y", ":"]) == ["x", "y"]
        allocator.assert_balanced()

    def test_out_array(self, counted_engine, allocator):
        counted_engine.invoke_by_name(NS, "range", [5, 0])
        allocator.assert_balanced()

    def test_borrowed_argument(self, counted_engine, allocator):
        """A strv passed with transfer none lives in host buffers only."""
        counted_engine.invoke_by_name(NS, "join", [["a", "b", "c"]])
        allocator.assert_balanced()


class TestErrorPaths:
    """Failure paths leave nothing behind."""

    def test_gerror(self, counted_engine, allocator):
        with pytest.raises(NativeCallError):
            counted_engine.invoke_by_name(NS, "may_fail", [True])
        allocator.assert_balanced()

    def test_conversion_failure(self, counted_engine, allocator):
        with pytest.raises(TypeError):
            counted_engine.invoke_by_name(NS, "join", [["a", 2]])
        allocator.assert_balanced()

    def test_callback_exception(self, counted_engine, allocator):
        def explode(item):
            raise ValueError(item)

        with pytest.raises(ValueError):
            counted_engine.invoke_by_name(NS, "foreach", [[1], explode])
        allocator.assert_balanced()


class TestHandles:
    """Owned handles give back their memory."""

    def test_caller_allocated_struct(self, counted_engine, allocator):
        point = counted_engine.invoke_by_name(NS, "point_init", [1, 2])
        allocator.assert_balanced(1)

        point.release()
        allocator.assert_balanced()

    def test_boxed_struct(self, counted_engine, counted_fake, allocator):
        point = counted_engine.invoke_by_name(NS, "Point.new", [1, 2])
        point.release()

        allocator.assert_balanced()
        assert counted_fake.freed_points == [point.address]

    def test_dropped_wrappers_collected(self, counted_engine, counted_fake, allocator):
        for i in range(20):
            counted_engine.invoke_by_name(NS, "Widget.new", [f"widget {i}"])
        gc.collect()

        allocator.assert_balanced()
        assert len(counted_engine.ownership) == 0
        assert len(counted_engine.objects) == 0
        assert len(counted_fake.finalized) == 20

    def test_close_releases_owned(self, counted_engine, allocator):
        keep = [counted_engine.invoke_by_name(NS, "Point.new", [i, i]) for i in range(3)]
        counted_engine.close()

        allocator.assert_balanced()
        assert all(p.released for p in keep)


@pytest.mark.slow
class TestStress:
    """High-volume call loops."""

    def test_repeated_split(self, counted_engine, allocator):
        for i in range(1000):
            counted_engine.invoke_by_name(NS, "split", [f"{i},{i + 1},{i + 2}", ","])

        allocator.assert_balanced()
        assert len(counted_engine.ownership) == 0

    def test_repeated_objects(self, counted_engine, allocator):
        for i in range(500):
            widget = counted_engine.invoke_by_name(NS, "Widget.new", [str(i)])
            widget.set_property("name", f"name {i}")
            assert widget.get_property("kind") == "widget"
            widget.release()

        allocator.assert_balanced()
        assert len(counted_engine.objects) == 0
