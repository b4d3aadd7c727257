from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta

import pytest

from flowforge.core.context import build_context
from flowforge.core.errors import (
    AllocationError,
    CapacityExceeded,
    ConsistencyViolation,
    EngineTransientError,
    SlotNotFoundError,
)
from flowforge.persistence.db import create_schema
from flowforge.persistence.guards import TenantPredicateError
from flowforge.persistence.repos import audit as audit_repo
from flowforge.persistence.repos import slots as slots_repo
from flowforge.persistence.repos import workflows as workflows_repo
from flowforge.services.allocator import SlotAllocator


async def _plant_metadata(ctx, slot_id: str, tenant_id: str, age_days: int) -> None:
    created = ctx.now() - timedelta(days=age_days)
    async with ctx.session_factory() as db:
        await slots_repo.write_metadata(
            db,
            slot_id=slot_id,
            tenant_id=tenant_id,
            metadata_hash="left-behind",
            payload={"tenant_id": tenant_id},
            now=created,
        )
        await db.commit()


def _actions(trail: list[dict]) -> list[str]:
    return [entry["action"] for entry in trail]


@pytest.mark.asyncio
async def test_bootstrap_is_idempotent(ctx) -> None:
    allocator = SlotAllocator(ctx)
    assert await allocator.bootstrap_pool() == 0
    status = await allocator.pool_status()
    assert status["total"] == 4
    assert status["available"] == 4
    assert set(status["projects"]) == {"1", "2"}


@pytest.mark.asyncio
async def test_acquire_returns_existing_slot(ctx) -> None:
    allocator = SlotAllocator(ctx)
    first = await allocator.acquire_slot("t1")
    second = await allocator.acquire_slot("t1")
    assert first.id == second.id
    assert first.status == "active"
    assert first.assigned_tenant_id == "t1"
    trail = await allocator.audit_trail(first.id)
    assert _actions(trail) == ["assigned"]


@pytest.mark.asyncio
async def test_acquire_balances_across_projects(ctx) -> None:
    allocator = SlotAllocator(ctx)
    ids = [(await allocator.acquire_slot(tenant)).id for tenant in ("t1", "t2", "t3", "t4")]
    assert ids == ["p01-s01", "p02-s01", "p01-s02", "p02-s02"]
    with pytest.raises(CapacityExceeded):
        await allocator.acquire_slot("t5")


@pytest.mark.asyncio
async def test_concurrent_tenants_never_share_a_slot(ctx) -> None:
    allocator = SlotAllocator(ctx)
    tenants = [f"tenant-{index}" for index in range(8)]
    results = await asyncio.gather(
        *(allocator.acquire_slot(tenant) for tenant in tenants), return_exceptions=True
    )
    granted = [result for result in results if not isinstance(result, Exception)]
    refused = [result for result in results if isinstance(result, Exception)]
    assert len(granted) == 4
    assert len({view.id for view in granted}) == 4
    assert len({view.assigned_tenant_id for view in granted}) == 4
    assert all(isinstance(error, CapacityExceeded) for error in refused)


@pytest.mark.asyncio
async def test_same_tenant_racing_itself_gets_one_slot(ctx) -> None:
    allocator = SlotAllocator(ctx)
    results = await asyncio.gather(*(allocator.acquire_slot("t1") for _ in range(5)))
    assert len({view.id for view in results}) == 1
    status = await allocator.pool_status()
    assert status["active"] == 1


@pytest.mark.asyncio
async def test_residual_engine_workflow_quarantines_candidate(ctx, engine) -> None:
    engine.seed_workflow(name="[ghost] old automation", tags=["p01-s01"])
    allocator = SlotAllocator(ctx)
    view = await allocator.acquire_slot("t1")
    assert view.id == "p01-s02"

    quarantined = {slot.id: slot for slot in await allocator.list_slots(status="archived")}
    assert "p01-s01" in quarantined
    assert quarantined["p01-s01"].assigned_tenant_id is None
    trail = await allocator.audit_trail("p01-s01")
    assert trail[-1]["action"] == "warning"
    assert trail[-1]["details"].startswith("L2")
    status = await allocator.pool_status()
    assert [item["id"] for item in status["quarantined"]] == ["p01-s01"]


@pytest.mark.asyncio
async def test_fresh_metadata_rejects_without_quarantine(ctx) -> None:
    await _plant_metadata(ctx, "p01-s01", "ghost", age_days=1)
    allocator = SlotAllocator(ctx)
    view = await allocator.acquire_slot("t1")
    assert view.id == "p01-s02"

    slots = {slot.id: slot for slot in await allocator.list_slots()}
    assert slots["p01-s01"].status == "available"
    trail = await allocator.audit_trail("p01-s01")
    assert _actions(trail) == ["warning"]
    assert trail[0]["details"].startswith("L3")
    assert trail[0]["tenant_id"] == "ghost"


@pytest.mark.asyncio
async def test_stale_metadata_is_archived_and_claim_proceeds(ctx) -> None:
    await _plant_metadata(ctx, "p01-s01", "ghost", age_days=40)
    allocator = SlotAllocator(ctx)
    view = await allocator.acquire_slot("t1")
    assert view.id == "p01-s01"
    assert "stale metadata" in (view.note or "")

    trail = await allocator.audit_trail("p01-s01")
    assert _actions(trail) == ["warning", "assigned"]
    async with ctx.session_factory() as db:
        metadata = await slots_repo.get_metadata(db, "p01-s01")
    assert metadata is not None
    assert metadata.tenant_id == "t1"


@pytest.mark.asyncio
async def test_dangling_assignment_in_audit_trail_rejects(ctx) -> None:
    async with ctx.session_factory() as db:
        await audit_repo.append_entry(
            db, slot_id="p01-s01", tenant_id="ghost", action="assigned", details="slot assigned", now=ctx.now()
        )
        await db.commit()
    allocator = SlotAllocator(ctx)
    view = await allocator.acquire_slot("t1")
    assert view.id == "p01-s02"
    trail = await allocator.audit_trail("p01-s01")
    assert _actions(trail) == ["assigned", "warning"]
    assert trail[-1]["details"].startswith("L4")


@pytest.mark.asyncio
async def test_engine_outage_does_not_block_allocation(ctx, engine) -> None:
    engine.fail("list_workflows", EngineTransientError("engine down", status_code=503))
    view = await SlotAllocator(ctx).acquire_slot("t1")
    assert view.id == "p01-s01"


@pytest.mark.asyncio
async def test_release_then_reassign(ctx, clock) -> None:
    allocator = SlotAllocator(ctx)
    first = await allocator.acquire_slot("t1")
    released = await allocator.release_slot("t1")
    assert released is not None
    assert released.status == "available"
    assert released.assigned_tenant_id is None
    assert await allocator.get_tenant_slot("t1") is None
    assert await allocator.release_slot("t1") is None

    async with ctx.session_factory() as db:
        assert await slots_repo.get_metadata(db, first.id) is None

    clock.advance(minutes=5)
    second = await allocator.acquire_slot("t2")
    assert second.id == first.id
    assert _actions(await allocator.audit_trail(first.id)) == ["assigned", "unassigned", "assigned"]


@pytest.mark.asyncio
async def test_restore_quarantined_slot(ctx, engine) -> None:
    residual = engine.seed_workflow(name="[ghost] old automation", tags=["p01-s01"])
    allocator = SlotAllocator(ctx)
    await allocator.acquire_slot("t1")

    with pytest.raises(ConsistencyViolation):
        await allocator.restore_slot("p01-s01", note="first look")

    del engine.workflows[residual["id"]]
    restored = await allocator.restore_slot("p01-s01", note="residual removed")
    assert restored.status == "available"
    assert restored.note == "residual removed"
    trail = await allocator.audit_trail("p01-s01")
    assert trail[-1]["action"] == "verified"

    available = [slot.id for slot in await allocator.list_slots(status="available")]
    assert "p01-s01" in available
    assert (await allocator.pool_status())["quarantined"] == []


@pytest.mark.asyncio
async def test_restore_rejects_unknown_and_healthy_slots(ctx) -> None:
    allocator = SlotAllocator(ctx)
    with pytest.raises(SlotNotFoundError):
        await allocator.restore_slot("p09-s09")
    with pytest.raises(AllocationError):
        await allocator.restore_slot("p01-s01")
    with pytest.raises(SlotNotFoundError):
        await allocator.audit_trail("p09-s09")


@pytest.mark.asyncio
async def test_acquire_requires_tenant(ctx) -> None:
    with pytest.raises(TenantPredicateError):
        await SlotAllocator(ctx).acquire_slot("")


@asynccontextmanager
async def _sized_pool(settings, engine, clock, tmp_path, *, projects: int, slots: int):
    sized = settings.model_copy(update={"project_count": projects, "slots_per_project": slots})
    context = build_context(
        sized,
        database_url=f"sqlite+aiosqlite:///{tmp_path / f'pool-{projects}x{slots}.db'}",
        engine_client=engine,
        clock=clock,
    )
    await create_schema(context.db_engine)
    await SlotAllocator(context).bootstrap_pool()
    try:
        yield context
    finally:
        await context.aclose()


async def _assert_owner_only_on_active(allocator: SlotAllocator) -> None:
    for slot in await allocator.list_slots():
        assert (slot.assigned_tenant_id is not None) == (slot.status == "active"), slot


def _active_spread(status: dict) -> int:
    active = [counts["active"] for counts in status["projects"].values()]
    return max(active) - min(active)


@pytest.mark.asyncio
async def test_two_tenants_racing_for_last_slot(settings, engine, clock, tmp_path) -> None:
    async with _sized_pool(settings, engine, clock, tmp_path, projects=10, slots=5) as ctx:
        allocator = SlotAllocator(ctx)
        for index in range(49):
            await allocator.acquire_slot(f"tenant-{index:02d}")
        assert (await allocator.pool_status())["active"] == 49

        results = await asyncio.gather(
            allocator.acquire_slot("tenant-a"), allocator.acquire_slot("tenant-b"), return_exceptions=True
        )
        granted = [result for result in results if not isinstance(result, Exception)]
        refused = [result for result in results if isinstance(result, Exception)]
        assert len(granted) == 1
        assert granted[0].id == "p10-s05"
        assert len(refused) == 1
        assert isinstance(refused[0], CapacityExceeded)

        status = await allocator.pool_status()
        assert status["active"] == 50
        assert status["available"] == 0
        await _assert_owner_only_on_active(allocator)


@pytest.mark.asyncio
async def test_local_workflow_residual_quarantines_candidate(ctx) -> None:
    async with ctx.session_factory() as db:
        await workflows_repo.create_workflow(
            db,
            workflow_id="wf-left-behind",
            tenant_id="ghost",
            slot_id="p01-s01",
            session_id=None,
            name="[ghost] old automation",
            definition={},
            now=ctx.now(),
        )
        await db.commit()

    allocator = SlotAllocator(ctx)
    view = await allocator.acquire_slot("t1")
    assert view.id == "p01-s02"

    slots = {slot.id: slot for slot in await allocator.list_slots()}
    assert slots["p01-s01"].status == "archived"
    assert slots["p01-s01"].assigned_tenant_id is None
    trail = await allocator.audit_trail("p01-s01")
    assert _actions(trail) == ["warning"]
    assert trail[0]["details"].startswith("L2")
    assert "local=1" in trail[0]["details"]


@pytest.mark.asyncio
async def test_allocation_keeps_projects_balanced(settings, engine, clock, tmp_path) -> None:
    async with _sized_pool(settings, engine, clock, tmp_path, projects=3, slots=4) as ctx:
        allocator = SlotAllocator(ctx)
        for index in range(12):
            await allocator.acquire_slot(f"tenant-{index:02d}")
            assert _active_spread(await allocator.pool_status()) <= 1


@pytest.mark.asyncio
async def test_owner_set_only_while_active_across_cycles(ctx, clock) -> None:
    allocator = SlotAllocator(ctx)
    for tenant in ("t1", "t2", "t3"):
        await allocator.acquire_slot(tenant)
        await _assert_owner_only_on_active(allocator)

    await allocator.release_slot("t2")
    await _assert_owner_only_on_active(allocator)

    clock.advance(minutes=5)
    await allocator.acquire_slot("t4")
    await _assert_owner_only_on_active(allocator)

    for tenant in ("t1", "t3", "t4"):
        await allocator.release_slot(tenant)
        await _assert_owner_only_on_active(allocator)
    assert (await allocator.pool_status())["active"] == 0
