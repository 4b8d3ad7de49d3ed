"""
Unit tests for the host port allocator.
"""

import asyncio
import socket

import pytest

from instancer.infrastructure.orchestrator import PoolPortAllocator, PortPoolExhausted


def allocator_with(used=(), start=40000, end=40009):
    async def used_ports():
        return set(used)

    return PoolPortAllocator(used_ports, start=start, end=end, check_host=False)


class TestPoolPortAllocator:
    """Test reservation semantics over a fixed range."""

    def test_allocates_lowest_free_ports(self):
        allocator = allocator_with(used={40000, 40002})
        ports = asyncio.run(allocator.allocate(3))
        assert ports == [40001, 40003, 40004]

    def test_reserved_until_released(self):
        async def scenario():
            allocator = allocator_with()
            first = await allocator.allocate(2)
            second = await allocator.allocate(2)
            await allocator.release(first)
            third = await allocator.allocate(2)
            return first, second, third, allocator.reserved

        first, second, third, reserved = asyncio.run(scenario())
        assert set(first).isdisjoint(second)
        assert third == first
        assert reserved == set(second) | set(third)

    def test_concurrent_allocations_do_not_overlap(self):
        async def scenario():
            allocator = allocator_with(end=40099)
            return await asyncio.gather(*(allocator.allocate(3) for _ in range(20)))

        batches = asyncio.run(scenario())
        flat = [p for batch in batches for p in batch]
        assert len(flat) == len(set(flat)) == 60

    def test_exhaustion(self):
        async def scenario():
            allocator = allocator_with(used={40000}, end=40002)
            with pytest.raises(PortPoolExhausted) as exc_info:
                await allocator.allocate(3)
            return exc_info.value, allocator.reserved

        error, reserved = asyncio.run(scenario())
        assert error.requested == 3
        assert error.available == 2
        assert reserved == set()

    def test_zero_ports(self):
        assert asyncio.run(allocator_with().allocate(0)) == []

    def test_invalid_range(self):
        with pytest.raises(ValueError):
            allocator_with(start=40010, end=40000)

    def test_skips_port_bound_on_host(self):
        async def used_ports():
            return set()

        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as held:
            held.bind(("0.0.0.0", 0))
            port = held.getsockname()[1]
            allocator = PoolPortAllocator(used_ports, start=port, end=port, check_host=True)
            with pytest.raises(PortPoolExhausted):
                asyncio.run(allocator.allocate(1))
