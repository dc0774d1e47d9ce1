"""Tests for the port allocator."""

import socket
from concurrent.futures import ThreadPoolExecutor

import pytest

from preview_sandbox.sandbox.errors import PoolExhausted
from preview_sandbox.sandbox.ports import PortAllocator


class TestPortAllocator:
    """Tests for PortAllocator."""

    def test_allocates_lowest_free_port_first(self, ports):
        """Ports are handed out in ascending order."""
        assert ports.allocate() == 5000
        assert ports.allocate() == 5001
        assert ports.in_use() == [5000, 5001]

    def test_released_port_is_reused(self, ports):
        """A released port is the next one handed out when it is the lowest."""
        first = ports.allocate()
        ports.allocate()
        ports.release(first)

        assert ports.allocate() == first

    def test_preferred_port_is_honoured_when_free(self, ports):
        """A free preferred port inside the range wins over the scan."""
        assert ports.allocate(preferred=5007) == 5007
        assert ports.allocate() == 5000

    def test_preferred_port_taken_falls_back_to_scan(self, ports):
        """A claimed preferred port is ignored."""
        ports.allocate(preferred=5000)
        assert ports.allocate(preferred=5000) == 5001

    def test_preferred_port_outside_range_is_ignored(self, ports):
        """Preferred ports outside the range are never handed out."""
        assert ports.allocate(preferred=80) == 5000

    def test_exhausted_pool_raises(self):
        """Allocating past the end of the range raises PoolExhausted."""
        allocator = PortAllocator(6000, 6002, check_bind=False)
        allocator.allocate()
        allocator.allocate()

        with pytest.raises(PoolExhausted):
            allocator.allocate()

    def test_release_unclaimed_is_noop(self, ports):
        """Releasing None or an unclaimed port does nothing."""
        ports.release(None)
        ports.release(5005)

        assert ports.in_use() == []

    def test_claim_ignores_ports_outside_range(self, ports):
        """Re-claimed ports only count inside the range."""
        ports.claim([5003, 9000])

        assert ports.is_claimed(5003)
        assert not ports.is_claimed(9000)
        assert ports.allocate(preferred=5003) != 5003

    def test_concurrent_allocations_are_unique(self):
        """Allocations from many threads never hand out the same port twice."""
        allocator = PortAllocator(7000, 7100, check_bind=False)

        with ThreadPoolExecutor(max_workers=16) as pool:
            allocated = list(pool.map(lambda _: allocator.allocate(), range(100)))

        assert len(set(allocated)) == 100
        with pytest.raises(PoolExhausted):
            allocator.allocate()

    def test_interleaved_allocate_and_release_keep_ports_unique(self):
        """Ports held at the same time are always distinct."""
        allocator = PortAllocator(7200, 7210, check_bind=False)
        held = []
        for round_number in range(30):
            held.append(allocator.allocate())
            if round_number % 3 == 0:
                allocator.release(held.pop(0))
            assert len(held) == len(set(held))

    def test_bind_check_skips_port_bound_by_another_process(self):
        """With the bind check on, a port bound outside the allocator is skipped."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
            busy.bind(("localhost", 0))
            busy.listen(1)
            taken = busy.getsockname()[1]

            allocator = PortAllocator(taken, taken + 5, check_bind=True, host="localhost")
            assert allocator.allocate(preferred=taken) != taken
