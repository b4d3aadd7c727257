from __future__ import annotations

import pytest

from flowforge.persistence.repos import slots as slots_repo
from flowforge.persistence.repos import workflows as workflows_repo
from flowforge.services.allocator import SlotAllocator
from flowforge.services.reconciliation import reconcile_slots


async def _plant_local_workflow(ctx, *, slot_id: str, tenant_id: str, workflow_id: str) -> None:
    async with ctx.session_factory() as db:
        await workflows_repo.create_workflow(
            db,
            workflow_id=workflow_id,
            tenant_id=tenant_id,
            slot_id=slot_id,
            session_id=None,
            name=f"[{tenant_id}] leftover",
            definition={},
            now=ctx.now(),
        )
        await db.commit()


async def _slots(ctx) -> dict:
    return {slot.id: slot for slot in await SlotAllocator(ctx).list_slots()}


@pytest.mark.asyncio
async def test_clean_pool_needs_no_repairs(ctx) -> None:
    await SlotAllocator(ctx).acquire_slot("t1")
    report = await reconcile_slots(ctx)
    assert report.scanned == 4
    assert report.corrected == []
    assert report.quarantined == []
    assert report.metadata_repaired == []


@pytest.mark.asyncio
async def test_available_slot_with_local_workflow_returns_to_owner(ctx) -> None:
    await _plant_local_workflow(ctx, slot_id="p01-s01", tenant_id="t9", workflow_id="wf-local")
    report = await reconcile_slots(ctx)
    assert report.corrected == ["p01-s01"]

    slot = (await _slots(ctx))["p01-s01"]
    assert slot.status == "active"
    assert slot.assigned_tenant_id == "t9"
    async with ctx.session_factory() as db:
        metadata = await slots_repo.get_metadata(db, "p01-s01")
    assert metadata is not None
    assert metadata.tenant_id == "t9"
    trail = await SlotAllocator(ctx).audit_trail("p01-s01")
    assert trail[-1]["action"] == "verified"


@pytest.mark.asyncio
async def test_engine_residual_owner_is_inferred_from_name(ctx, engine) -> None:
    engine.seed_workflow(name="[t7] nightly digest", tags=["p02-s02"])
    report = await reconcile_slots(ctx)
    assert report.corrected == ["p02-s02"]
    assert (await _slots(ctx))["p02-s02"].assigned_tenant_id == "t7"


@pytest.mark.asyncio
async def test_ambiguous_owners_are_quarantined(ctx, engine) -> None:
    engine.seed_workflow(name="[t7] one", tags=["p01-s02"])
    engine.seed_workflow(name="[t8] two", tags=["p01-s02"])
    report = await reconcile_slots(ctx)
    assert report.quarantined == ["p01-s02"]

    slot = (await _slots(ctx))["p01-s02"]
    assert slot.status == "archived"
    assert slot.assigned_tenant_id is None
    trail = await SlotAllocator(ctx).audit_trail("p01-s02")
    assert trail[-1]["action"] == "warning"
    assert "manual review required" in trail[-1]["details"]


@pytest.mark.asyncio
async def test_unnamed_residual_is_quarantined(ctx, engine) -> None:
    engine.seed_workflow(name="untitled", tags=["p02-s01"])
    report = await reconcile_slots(ctx)
    assert report.quarantined == ["p02-s01"]


@pytest.mark.asyncio
async def test_owner_already_holding_a_slot_is_not_given_a_second(ctx, engine) -> None:
    held = await SlotAllocator(ctx).acquire_slot("t1")
    assert held.id == "p01-s01"
    engine.seed_workflow(name="[t1] duplicate", tags=["p02-s02"])
    report = await reconcile_slots(ctx)
    assert report.quarantined == ["p02-s02"]
    assert (await SlotAllocator(ctx).get_tenant_slot("t1")).id == "p01-s01"


@pytest.mark.asyncio
async def test_active_slot_missing_metadata_is_repaired(ctx) -> None:
    view = await SlotAllocator(ctx).acquire_slot("t1")
    async with ctx.session_factory() as db:
        await slots_repo.archive_metadata(db, slot_id=view.id, reason="lost", now=ctx.now())
        await db.commit()

    report = await reconcile_slots(ctx)
    assert report.metadata_repaired == [view.id]
    async with ctx.session_factory() as db:
        metadata = await slots_repo.get_metadata(db, view.id)
    assert metadata is not None
    assert metadata.metadata_hash == view.metadata_hash
