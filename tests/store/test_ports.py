"""Tests for the port allocator."""

import asyncio

import pytest
import pytest_asyncio

from agentplane.migrations.runner import apply_migrations
from agentplane.store.ports import PortAllocator
from agentplane.types import ResourceClass


@pytest_asyncio.fixture
async def allocator(tmp_path):
    db_path = str(tmp_path / "ports.db")
    await apply_migrations(db_path)
    return PortAllocator(db_path)


@pytest.mark.asyncio
async def test_first_port_is_class_base(allocator):
    assert await allocator.assign(ResourceClass.AGENT, "a1") == 4100
    assert await allocator.assign(ResourceClass.MCP, "m1") == 4200


@pytest.mark.asyncio
async def test_ports_increase_monotonically(allocator):
    ports = [await allocator.assign(ResourceClass.AGENT, f"a{i}") for i in range(3)]
    assert ports == [4100, 4101, 4102]


@pytest.mark.asyncio
async def test_assign_is_idempotent(allocator):
    first = await allocator.assign(ResourceClass.AGENT, "a1")
    await allocator.assign(ResourceClass.AGENT, "a2")
    assert await allocator.assign(ResourceClass.AGENT, "a1") == first
    assert await allocator.lookup(ResourceClass.AGENT, "a1") == first


@pytest.mark.asyncio
async def test_released_gap_is_not_reused_below_max(allocator):
    await allocator.assign(ResourceClass.AGENT, "a1")
    await allocator.assign(ResourceClass.AGENT, "a2")
    await allocator.release(ResourceClass.AGENT, "a1")

    assert await allocator.lookup(ResourceClass.AGENT, "a1") is None
    assert await allocator.assign(ResourceClass.AGENT, "a3") == 4102


@pytest.mark.asyncio
async def test_classes_do_not_collide(tmp_path):
    db_path = str(tmp_path / "ports.db")
    await apply_migrations(db_path)
    allocator = PortAllocator(db_path, {ResourceClass.AGENT: 5000, ResourceClass.MCP: 5001})

    assert await allocator.assign(ResourceClass.MCP, "m1") == 5001
    assert await allocator.assign(ResourceClass.AGENT, "a1") == 5000
    # 5001 belongs to the mcp class already
    assert await allocator.assign(ResourceClass.AGENT, "a2") == 5002


@pytest.mark.asyncio
async def test_concurrent_assign_gives_distinct_ports(allocator):
    ports = await asyncio.gather(
        *(allocator.assign(ResourceClass.AGENT, f"a{i}") for i in range(10))
    )
    assert len(set(ports)) == 10
