"""
Unit Tests for host port allocation
"""
import pytest

from pilot.modules.sandbox.port_allocator import PortAllocator, lowest_free_port


def test_lowest_free_port_skips_used():
    assert lowest_free_port({3001, 3002, 3004}, 3001) == 3003


def test_lowest_free_port_starts_at_floor():
    assert lowest_free_port(set(), 3001) == 3001
    assert lowest_free_port({2999, 3000}, 3001) == 3001


def test_lowest_free_port_exhausted():
    with pytest.raises(RuntimeError):
        lowest_free_port({65535}, 65535)


class TestPortAllocator:

    def test_concurrent_claims_get_distinct_ports(self, session_store):
        allocator = PortAllocator(session_store, floor=3001)

        first = allocator.claim()
        second = allocator.claim()

        assert (first, second) == (3001, 3002)
        assert allocator.reserved == {3001, 3002}

    def test_released_port_is_reused(self, session_store):
        allocator = PortAllocator(session_store, floor=3001)

        port = allocator.claim()
        allocator.release(port)

        assert allocator.claim() == port

    def test_session_ports_are_skipped(self, session_store):
        session_store.create_session('s1')
        session_store.update_session('s1', preview_port=3001)
        allocator = PortAllocator(session_store, floor=3001)

        assert allocator.claim() == 3002

    def test_excluded_ports_are_skipped(self, session_store):
        allocator = PortAllocator(session_store, floor=3001)

        assert allocator.claim(exclude={3001, 3002}) == 3003

    def test_port_freed_by_deleted_session(self, session_store):
        session_store.create_session('s1')
        session_store.update_session('s1', preview_port=3001)
        session_store.delete_session('s1')
        allocator = PortAllocator(session_store, floor=3001)

        assert allocator.claim() == 3001
