from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import timedelta
import logging
from typing import Any

from flowforge.core.clock import ensure_utc
from flowforge.core.errors import EngineError
from flowforge.domain.scope import AuditAction, SlotStatus
from flowforge.persistence.repos import audit as audit_repo
from flowforge.persistence.repos import slots as slots_repo
from flowforge.persistence.repos import workflows as workflows_repo
from flowforge.services.allocator import metadata_hash
from flowforge.services.deployment import tenant_from_workflow_name


logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    scanned: int = 0
    corrected: list[str] = field(default_factory=list)
    quarantined: list[str] = field(default_factory=list)
    metadata_repaired: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


async def _engine_residuals(ctx, slot_id: str) -> list[dict[str, Any]]:
    if ctx.engine_client is None or not ctx.settings.engine_check_residuals:
        return []
    try:
        return await ctx.engine_client.list_workflows(tag=slot_id)
    except EngineError as exc:
        logger.warning("reconcile_engine_check_failed slot_id=%s error=%s", slot_id, exc)
        return []


async def reconcile_slots(ctx) -> ReconciliationReport:
    """Repair drift between the slot ledger, workflow store, metadata and engine.

    Available slots that still carry residual workflows or fresh metadata are
    handed back to their owner when exactly one tenant can be inferred and that
    tenant holds no other slot; otherwise they are quarantined for manual
    review. Active slots that lost their metadata record get it recreated.
    """
    report = ReconciliationReport()
    grace = timedelta(days=ctx.settings.stale_metadata_grace_days)

    async with ctx.session_factory() as db:
        ledger = [(slot.id, slot.status) for slot in await slots_repo.list_slots(db)]
        await db.rollback()
    report.scanned = len(ledger)

    for slot_id, status in ledger:
        if status == SlotStatus.AVAILABLE.value:
            await _reconcile_available(ctx, slot_id, grace, report)
        elif status == SlotStatus.ACTIVE.value:
            await _repair_active_metadata(ctx, slot_id, report)

    logger.info(
        "slots_reconciled scanned=%s corrected=%s quarantined=%s metadata_repaired=%s",
        report.scanned,
        len(report.corrected),
        len(report.quarantined),
        len(report.metadata_repaired),
    )
    return report


async def _reconcile_available(ctx, slot_id: str, grace: timedelta, report: ReconciliationReport) -> None:
    engine_residuals = await _engine_residuals(ctx, slot_id)
    now = ctx.now()
    async with ctx.session_factory() as db:
        slot = await slots_repo.get_slot(db, slot_id)
        if slot is None or slot.status != SlotStatus.AVAILABLE.value:
            return
        local = await workflows_repo.list_slot_workflows(db, slot_id)
        metadata = await slots_repo.get_metadata(db, slot_id)
        fresh_metadata = metadata is not None and now - ensure_utc(metadata.created_at) < grace
        if not local and not engine_residuals and not fresh_metadata:
            await db.rollback()
            return

        tenants: set[str] = {workflow.tenant_id for workflow in local}
        if fresh_metadata:
            tenants.add(metadata.tenant_id)
        for item in engine_residuals:
            inferred = tenant_from_workflow_name(str(item.get("name") or ""))
            if inferred:
                tenants.add(inferred)

        evidence = (
            f"local_workflows={len(local)} engine_workflows={len(engine_residuals)} "
            f"fresh_metadata={bool(fresh_metadata)}"
        )
        owner = next(iter(tenants)) if len(tenants) == 1 else None
        if owner is not None and await slots_repo.get_active_slot_for_tenant(db, owner) is None:
            digest = metadata.metadata_hash if fresh_metadata and metadata.tenant_id == owner else metadata_hash(owner, now)
            claimed = await slots_repo.claim_slot(
                db,
                slot_id=slot_id,
                expected_version=slot.version,
                tenant_id=owner,
                metadata_hash=digest,
                now=now,
                note="restored to owner by reconciliation",
            )
            if not claimed:
                await db.rollback()
                report.skipped.append(slot_id)
                return
            if metadata is not None and not (fresh_metadata and metadata.tenant_id == owner):
                await slots_repo.archive_metadata(db, slot_id=slot_id, reason="reconciled", now=now)
                metadata = None
            if metadata is None:
                await slots_repo.write_metadata(
                    db,
                    slot_id=slot_id,
                    tenant_id=owner,
                    metadata_hash=digest,
                    payload={"tenant_id": owner, "slot_id": slot_id, "source": "reconciliation"},
                    now=now,
                )
            await audit_repo.append_entry(
                db,
                slot_id=slot_id,
                tenant_id=owner,
                action=AuditAction.VERIFIED.value,
                details=f"reconciled: slot was available but still owned by {owner} ({evidence}); marked active",
                now=now,
            )
            await db.commit()
            report.corrected.append(slot_id)
            logger.warning("slot_reconciled_active slot_id=%s tenant_id=%s", slot_id, owner)
            return

        reason = "no owner could be inferred" if not tenants else f"ambiguous or conflicting owners {sorted(tenants)}"
        vacated = await slots_repo.vacate_slot(
            db,
            slot_id=slot_id,
            expected_version=slot.version,
            now=now,
            status=SlotStatus.ARCHIVED.value,
            note=f"quarantined by reconciliation: {reason}",
        )
        if not vacated:
            await db.rollback()
            report.skipped.append(slot_id)
            return
        await audit_repo.append_entry(
            db,
            slot_id=slot_id,
            tenant_id=owner,
            action=AuditAction.WARNING.value,
            details=f"manual review required: residual state on available slot, {reason} ({evidence})",
            now=now,
        )
        await db.commit()
        report.quarantined.append(slot_id)
        logger.warning("slot_quarantined slot_id=%s reason=%s", slot_id, reason)


async def _repair_active_metadata(ctx, slot_id: str, report: ReconciliationReport) -> None:
    now = ctx.now()
    async with ctx.session_factory() as db:
        slot = await slots_repo.get_slot(db, slot_id)
        if slot is None or slot.status != SlotStatus.ACTIVE.value or slot.assigned_tenant_id is None:
            await db.rollback()
            return
        if await slots_repo.get_metadata(db, slot_id) is not None:
            await db.rollback()
            return
        tenant_id = slot.assigned_tenant_id
        digest = slot.metadata_hash or metadata_hash(tenant_id, now)
        assigned_at = ensure_utc(slot.assigned_at)
        await slots_repo.write_metadata(
            db,
            slot_id=slot_id,
            tenant_id=tenant_id,
            metadata_hash=digest,
            payload={
                "tenant_id": tenant_id,
                "slot_id": slot_id,
                "project_number": slot.project_number,
                "user_slot": slot.user_slot,
                "assigned_at": assigned_at.isoformat() if assigned_at else None,
                "source": "reconciliation",
            },
            now=now,
        )
        await audit_repo.append_entry(
            db,
            slot_id=slot_id,
            tenant_id=tenant_id,
            action=AuditAction.VERIFIED.value,
            details="reconciled: active slot was missing its metadata record; recreated",
            now=now,
        )
        await db.commit()
        report.metadata_repaired.append(slot_id)
        logger.warning("slot_metadata_recreated slot_id=%s tenant_id=%s", slot_id, tenant_id)
