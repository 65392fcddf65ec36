"""Append-only audit trail."""

from decimal import Decimal
from typing import Any

import structlog
from fastapi.encoders import jsonable_encoder
from sqlalchemy import and_, insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from clinicdesk.core.events import Hook
from clinicdesk.database import row_to_dict
from clinicdesk.models.notifications import audit_entries

logger = structlog.get_logger(__name__)


def to_json_safe(value: Any) -> Any:
    """Encode datetimes, UUIDs, enums and Decimals for a JSON column."""
    return jsonable_encoder(value, custom_encoder={Decimal: str})


class AuditService:
    """Service for writing and reading audit entries."""

    @staticmethod
    async def record(
        db: AsyncSession,
        entity_type: str,
        entity_id: Any,
        actor_id: Any,
        action: str,
        diff: dict[str, Any] | None = None,
    ) -> None:
        """
        Append one audit entry (caller commits).

        Args:
            db: Database session
            entity_type: Entity kind (Appointment, Bill, Payment, Patient)
            entity_id: Entity id
            actor_id: Id of the acting user
            action: Verb such as booked, cancelled, payment_success
            diff: Optional before/after details
        """
        await db.execute(
            insert(audit_entries).values(
                entity_type=entity_type,
                entity_id=str(entity_id),
                actor_id=str(actor_id),
                action=action,
                diff=to_json_safe(diff) if diff is not None else None,
            )
        )
        logger.info(
            "audit_recorded",
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action,
        )

    @staticmethod
    def hook(
        entity_type: str,
        entity_id: Any,
        actor_id: Any,
        action: str,
        diff: dict[str, Any] | None = None,
    ) -> Hook:
        """Build a post-commit hook that records one audit entry."""

        async def _record(db: AsyncSession) -> None:
            await AuditService.record(db, entity_type, entity_id, actor_id, action, diff)

        return _record

    @staticmethod
    async def list_entries(
        db: AsyncSession,
        entity_type: str,
        entity_id: str,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        """
        List audit entries for one entity, oldest first.

        Args:
            db: Database session
            entity_type: Entity kind
            entity_id: Entity id
            limit: Maximum number of entries

        Returns:
            Audit entries
        """
        stmt = (
            select(audit_entries)
            .where(
                and_(
                    audit_entries.c.entity_type == entity_type,
                    audit_entries.c.entity_id == entity_id,
                )
            )
            .order_by(audit_entries.c.at)
            .limit(limit)
        )
        result = await db.execute(stmt)
        return [row_to_dict(row) for row in result.fetchall()]  # type: ignore[misc]
