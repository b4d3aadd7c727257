from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import hashlib
import logging
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from flowforge.core.clock import ensure_utc
from flowforge.core.errors import (
    AllocationConflict,
    AllocationError,
    CapacityExceeded,
    ConsistencyViolation,
    EngineError,
    SlotNotFoundError,
)
from flowforge.domain.models import Slot
from flowforge.domain.scope import AuditAction, SlotStatus
from flowforge.persistence.guards import require_tenant_id
from flowforge.persistence.repos import audit as audit_repo
from flowforge.persistence.repos import slots as slots_repo
from flowforge.persistence.repos import workflows as workflows_repo


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SlotView:
    id: str
    project_number: int
    user_slot: int
    status: str
    assigned_tenant_id: str | None
    assigned_at: datetime | None
    metadata_hash: str | None
    version: int
    note: str | None

    @classmethod
    def of(cls, slot: Slot) -> "SlotView":
        return cls(
            id=slot.id,
            project_number=slot.project_number,
            user_slot=slot.user_slot,
            status=slot.status,
            assigned_tenant_id=slot.assigned_tenant_id,
            assigned_at=ensure_utc(slot.assigned_at),
            metadata_hash=slot.metadata_hash,
            version=slot.version,
            note=slot.note,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_number": self.project_number,
            "user_slot": self.user_slot,
            "status": self.status,
            "assigned_tenant_id": self.assigned_tenant_id,
            "assigned_at": self.assigned_at.isoformat() if self.assigned_at else None,
            "metadata_hash": self.metadata_hash,
            "version": self.version,
            "note": self.note,
        }


def metadata_hash(tenant_id: str, at: datetime) -> str:
    return hashlib.sha256(f"{tenant_id}:{at.isoformat()}".encode("utf-8")).hexdigest()


class SlotAllocator:
    """Grants each tenant one exclusive slot out of the fixed project x slot pool.

    Candidates pass four verification layers before the claim:

    * L1 ledger status is still ``available``;
    * L2 no residual workflows carry the slot tag, locally or on the engine;
    * L3 no live metadata younger than the grace period;
    * L4 the audit trail does not end in an ``assigned`` entry.

    The claim itself is a compare-and-swap on (status, version) inside one
    transaction, backed by the unique constraint on ``assigned_tenant_id``.
    """

    def __init__(self, ctx) -> None:
        self._ctx = ctx
        self._settings = ctx.settings

    async def bootstrap_pool(self) -> int:
        async with self._ctx.session_factory() as db:
            created = await slots_repo.ensure_pool(
                db,
                project_count=self._settings.project_count,
                slots_per_project=self._settings.slots_per_project,
            )
            await db.commit()
        logger.info(
            "slot_pool_bootstrapped created=%s projects=%s slots_per_project=%s",
            created,
            self._settings.project_count,
            self._settings.slots_per_project,
        )
        return created

    async def get_tenant_slot(self, tenant_id: str) -> SlotView | None:
        require_tenant_id(tenant_id)
        async with self._ctx.session_factory() as db:
            slot = await slots_repo.get_active_slot_for_tenant(db, tenant_id)
            return SlotView.of(slot) if slot is not None else None

    async def acquire_slot(self, tenant_id: str) -> SlotView:
        require_tenant_id(tenant_id)
        existing = await self.get_tenant_slot(tenant_id)
        if existing is not None:
            return existing

        rejected: set[str] = set()
        while True:
            async with self._ctx.session_factory() as db:
                candidate_id = await self._next_candidate(db, rejected)
                await db.rollback()
            if candidate_id is None:
                logger.warning("slot_capacity_exceeded tenant_id=%s rejected=%s", tenant_id, len(rejected))
                raise CapacityExceeded("No execution slot is available right now")

            engine_residuals = await self._engine_residuals(candidate_id)
            try:
                return await self._verify_and_claim(tenant_id, candidate_id, engine_residuals)
            except ConsistencyViolation as violation:
                logger.info(
                    "slot_candidate_rejected tenant_id=%s slot_id=%s layer=%s reason=%s",
                    tenant_id,
                    violation.slot_id,
                    violation.layer,
                    violation.reason,
                )
                rejected.add(candidate_id)
            except AllocationConflict:
                logger.info("slot_claim_conflict tenant_id=%s slot_id=%s", tenant_id, candidate_id)
                rejected.add(candidate_id)
            except IntegrityError:
                # Same tenant won a concurrent claim on another slot.
                winner = await self.get_tenant_slot(tenant_id)
                if winner is not None:
                    logger.info("slot_claim_deduplicated tenant_id=%s slot_id=%s", tenant_id, winner.id)
                    return winner
                rejected.add(candidate_id)

    async def _next_candidate(self, db: AsyncSession, rejected: set[str]) -> str | None:
        # Fresh reads every round so concurrent claims shift the balance. Only the id
        # leaves the session; the caller rolls back, which expires loaded rows.
        counts = await slots_repo.active_counts_by_project(db)
        available = [
            slot
            for slot in await slots_repo.list_slots(db, status=SlotStatus.AVAILABLE.value)
            if slot.id not in rejected
        ]
        if not available:
            return None
        best = min(
            available,
            key=lambda slot: (counts.get(slot.project_number, 0), slot.project_number, slot.user_slot),
        )
        return best.id

    async def _engine_residuals(self, slot_id: str) -> list[dict[str, Any]]:
        client = self._ctx.engine_client
        if client is None or not self._settings.engine_check_residuals:
            return []
        try:
            return await client.list_workflows(tag=slot_id)
        except EngineError as exc:
            # Engine outage does not block allocation; the local ledger still applies.
            logger.warning("slot_engine_check_failed slot_id=%s error=%s", slot_id, exc)
            return []

    async def _verify_and_claim(
        self, tenant_id: str, slot_id: str, engine_residuals: list[dict[str, Any]]
    ) -> SlotView:
        now = self._ctx.now()
        async with self._ctx.session_factory() as db:
            slot = await slots_repo.get_slot(db, slot_id)
            if slot is None or slot.status != SlotStatus.AVAILABLE.value:
                raise ConsistencyViolation("L1", slot_id, "ledger status is not available")

            local_residuals = await workflows_repo.count_slot_workflows(db, slot_id)
            if local_residuals or engine_residuals:
                reason = (
                    f"residual workflows found (local={local_residuals}, engine={len(engine_residuals)})"
                )
                await audit_repo.append_entry(
                    db,
                    slot_id=slot_id,
                    tenant_id=None,
                    action=AuditAction.WARNING.value,
                    details=f"L2 {reason}; slot quarantined",
                    now=now,
                )
                await slots_repo.vacate_slot(
                    db,
                    slot_id=slot_id,
                    expected_version=slot.version,
                    now=now,
                    status=SlotStatus.ARCHIVED.value,
                    note=f"quarantined: {reason}",
                )
                await db.commit()
                raise ConsistencyViolation("L2", slot_id, reason)

            note: str | None = None
            metadata = await slots_repo.get_metadata(db, slot_id)
            if metadata is not None:
                age = now - ensure_utc(metadata.created_at)
                grace = timedelta(days=self._settings.stale_metadata_grace_days)
                if age < grace:
                    reason = f"live metadata from tenant {metadata.tenant_id} is {age.days}d old"
                    await self._warn(db, slot_id, metadata.tenant_id, f"L3 {reason}", now)
                    raise ConsistencyViolation("L3", slot_id, reason)
                note = f"stale metadata from tenant {metadata.tenant_id} ({age.days}d) archived"
                await audit_repo.append_entry(
                    db,
                    slot_id=slot_id,
                    tenant_id=metadata.tenant_id,
                    action=AuditAction.WARNING.value,
                    details=f"L3 {note}",
                    now=now,
                )

            latest = await audit_repo.latest_assignment_entry(db, slot_id)
            if latest is not None and latest.action == AuditAction.ASSIGNED.value:
                owner = latest.tenant_id
                reason = f"audit trail still shows tenant {owner} assigned"
                await db.rollback()
                await self._warn(db, slot_id, owner, f"L4 {reason}", now)
                raise ConsistencyViolation("L4", slot_id, reason)

            digest = metadata_hash(tenant_id, now)
            claimed = await slots_repo.claim_slot(
                db,
                slot_id=slot_id,
                expected_version=slot.version,
                tenant_id=tenant_id,
                metadata_hash=digest,
                now=now,
                note=note,
            )
            if not claimed:
                await db.rollback()
                raise AllocationConflict(f"slot {slot_id} changed before the claim")

            if metadata is not None:
                await slots_repo.archive_metadata(db, slot_id=slot_id, reason="stale_on_reassign", now=now)
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
                    "assigned_at": now.isoformat(),
                },
                now=now,
            )
            details = "slot assigned" if note is None else f"slot assigned; {note}"
            await audit_repo.append_entry(
                db,
                slot_id=slot_id,
                tenant_id=tenant_id,
                action=AuditAction.ASSIGNED.value,
                details=details,
                now=now,
            )
            await db.commit()
            await db.refresh(slot)
            view = SlotView.of(slot)
            await db.rollback()
        logger.info("slot_assigned tenant_id=%s slot_id=%s", tenant_id, slot_id)
        return view

    async def _warn(self, db: AsyncSession, slot_id: str, tenant_id: str | None, details: str, now: datetime) -> None:
        # Rejections are recorded on their own so the claim transaction stays clean.
        await audit_repo.append_entry(
            db,
            slot_id=slot_id,
            tenant_id=tenant_id,
            action=AuditAction.WARNING.value,
            details=details,
            now=now,
        )
        await db.commit()

    async def release_slot(self, tenant_id: str) -> SlotView | None:
        require_tenant_id(tenant_id)
        now = self._ctx.now()
        async with self._ctx.session_factory() as db:
            slot = await slots_repo.get_active_slot_for_tenant(db, tenant_id)
            if slot is None:
                return None
            await slots_repo.archive_metadata(db, slot_id=slot.id, reason="released", now=now)
            await audit_repo.append_entry(
                db,
                slot_id=slot.id,
                tenant_id=tenant_id,
                action=AuditAction.UNASSIGNED.value,
                details="slot released",
                now=now,
            )
            vacated = await slots_repo.vacate_slot(db, slot_id=slot.id, expected_version=slot.version, now=now)
            if not vacated:
                await db.rollback()
                raise AllocationConflict(f"slot {slot.id} changed during release")
            await db.commit()
            await db.refresh(slot)
            view = SlotView.of(slot)
            await db.rollback()
        logger.info("slot_released tenant_id=%s slot_id=%s", tenant_id, view.id)
        return view

    async def pool_status(self) -> dict[str, Any]:
        async with self._ctx.session_factory() as db:
            slots = await slots_repo.list_slots(db)
        projects: dict[int, dict[str, int]] = {}
        totals = {status.value: 0 for status in SlotStatus}
        for slot in slots:
            totals[slot.status] = totals.get(slot.status, 0) + 1
            bucket = projects.setdefault(slot.project_number, {status.value: 0 for status in SlotStatus})
            bucket[slot.status] = bucket.get(slot.status, 0) + 1
        return {
            "total": len(slots),
            **totals,
            "projects": {str(number): counts for number, counts in sorted(projects.items())},
            "quarantined": [
                {"id": slot.id, "note": slot.note}
                for slot in slots
                if slot.status == SlotStatus.ARCHIVED.value
            ],
        }

    async def list_slots(self, *, status: str | None = None) -> list[SlotView]:
        async with self._ctx.session_factory() as db:
            return [SlotView.of(slot) for slot in await slots_repo.list_slots(db, status=status)]

    async def audit_trail(self, slot_id: str, *, limit: int = 100) -> list[dict[str, Any]]:
        async with self._ctx.session_factory() as db:
            if await slots_repo.get_slot(db, slot_id) is None:
                raise SlotNotFoundError(f"slot {slot_id} not found")
            entries = await audit_repo.list_entries(db, slot_id=slot_id, limit=limit)
            return [
                {
                    "id": entry.id,
                    "slot_id": entry.slot_id,
                    "tenant_id": entry.tenant_id,
                    "action": entry.action,
                    "details": entry.details,
                    "created_at": ensure_utc(entry.created_at).isoformat(),
                }
                for entry in entries
            ]

    async def restore_slot(self, slot_id: str, note: str | None = None) -> SlotView:
        """Return a quarantined slot to the pool once its residuals are gone."""
        engine_residuals = await self._engine_residuals(slot_id)
        now = self._ctx.now()
        async with self._ctx.session_factory() as db:
            slot = await slots_repo.get_slot(db, slot_id)
            if slot is None:
                raise SlotNotFoundError(f"slot {slot_id} not found")
            if slot.status != SlotStatus.ARCHIVED.value:
                raise AllocationError(f"slot {slot_id} is {slot.status}, not quarantined")
            local_residuals = await workflows_repo.count_slot_workflows(db, slot_id)
            if local_residuals or engine_residuals:
                reason = (
                    f"residual workflows remain (local={local_residuals}, engine={len(engine_residuals)})"
                )
                await db.rollback()
                await self._warn(db, slot_id, None, f"L2 restore refused: {reason}", now)
                raise ConsistencyViolation("L2", slot_id, reason)

            await slots_repo.archive_metadata(db, slot_id=slot_id, reason="restored", now=now)
            latest = await audit_repo.latest_assignment_entry(db, slot_id)
            if latest is not None and latest.action == AuditAction.ASSIGNED.value:
                await audit_repo.append_entry(
                    db,
                    slot_id=slot_id,
                    tenant_id=latest.tenant_id,
                    action=AuditAction.UNASSIGNED.value,
                    details="assignment closed on restore",
                    now=now,
                )
            await audit_repo.append_entry(
                db,
                slot_id=slot_id,
                tenant_id=None,
                action=AuditAction.VERIFIED.value,
                details=f"restored to pool: {note or 'operator verified'}",
                now=now,
            )
            vacated = await slots_repo.vacate_slot(
                db, slot_id=slot_id, expected_version=slot.version, now=now, note=note
            )
            if not vacated:
                await db.rollback()
                raise AllocationConflict(f"slot {slot_id} changed during restore")
            await db.commit()
            await db.refresh(slot)
            view = SlotView.of(slot)
            await db.rollback()
        logger.info("slot_restored slot_id=%s", slot_id)
        return view
