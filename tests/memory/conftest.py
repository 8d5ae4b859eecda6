"""
Memory safety test fixtures.

Provides tools for:
- Callback survival testing
- Allocation balance verification through a counting allocator
"""

import gc
import weakref
from typing import Any

import pytest

from girbridge import Engine, EngineConfig, Repository
from girbridge.marshal import CAllocator
from tests.fixtures.native import FakeLibrary


@pytest.fixture
def callback_ref_tracker():
    """Track callback reference survival."""

    class CallbackRefTracker:
        def __init__(self):
            self._weak_refs: list[weakref.ref] = []
            self._strong_refs: list[Any] = []

        def track_weak(self, obj) -> weakref.ref:
            """Track object weakly - should be GC'd."""
            ref = weakref.ref(obj)
            self._weak_refs.append(ref)
            return ref

        def track_strong(self, obj):
            """Track object strongly - must survive."""
            self._strong_refs.append(obj)
            return obj

        def assert_weak_collected(self):
            """Assert all weakly-tracked objects were GC'd."""
            gc.collect()
            gc.collect()
            gc.collect()
            alive = [r for r in self._weak_refs if r() is not None]
            assert not alive, f"{len(alive)} weak refs still alive"

        def clear(self):
            self._weak_refs.clear()
            self._strong_refs.clear()

    tracker = CallbackRefTracker()
    yield tracker
    tracker.clear()


class CountingAllocator(CAllocator):
    """C allocator that counts live allocations."""

    def __init__(self):
        super().__init__()
        self.allocs = 0
        self.frees = 0

    @property
    def balance(self) -> int:
        """Positive = leaks, negative = double-frees."""
        return self.allocs - self.frees

    def alloc(self, size: int) -> int:
        self.allocs += 1
        return super().alloc(size)

    def free(self, address: int) -> None:
        if address:
            self.frees += 1
        super().free(address)

    def assert_balanced(self, expected: int = 0):
        assert self.balance == expected, (
            f"Allocation imbalance: {self.allocs} allocs, {self.frees} frees"
        )


@pytest.fixture
def allocator():
    """Counting allocator shared by the fake library and the engine."""
    return CountingAllocator()


@pytest.fixture
def counted_fake(allocator):
    return FakeLibrary(allocator)


@pytest.fixture
def counted_engine(counted_fake, allocator):
    """Engine whose every allocation (and the library's) is counted."""
    engine = Engine(counted_fake.install(Repository()), EngineConfig(), allocator=allocator)
    yield engine
    engine.close()
    gc.collect()
