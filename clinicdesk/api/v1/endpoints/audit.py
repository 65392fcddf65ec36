"""Audit trail endpoints."""

from fastapi import APIRouter, Query, status

from clinicdesk.core.exceptions import ForbiddenException
from clinicdesk.dependencies import CurrentActor, DatabaseSession
from clinicdesk.schemas.notifications import AuditEntryRecord, AuditQuery
from clinicdesk.services.audit_service import AuditService

router = APIRouter()


@router.get(
    "/",
    response_model=list[AuditEntryRecord],
    status_code=status.HTTP_200_OK,
    tags=["Audit"],
    summary="Audit trail for an entity",
)
async def list_audit_entries(
    actor: CurrentActor,
    db: DatabaseSession,
    entity_type: str = Query(..., description="Appointment, Bill, Payment, Receipt or Patient"),
    entity_id: str = Query(...),
    limit: int = Query(100, ge=1, le=500),
) -> list[AuditEntryRecord]:
    """
    List the audit entries of one entity, oldest first (staff only).

    Args:
        actor: Authenticated user
        db: Database session
        entity_type: Entity kind
        entity_id: Entity id
        limit: Maximum number of entries

    Returns:
        Audit entries

    Raises:
        ForbiddenException: If user is not staff
    """
    if not actor.is_staff:
        raise ForbiddenException("Only staff can read the audit trail")

    query = AuditQuery(entity_type=entity_type, entity_id=entity_id, limit=limit)
    entries = await AuditService.list_entries(
        db, query.entity_type, query.entity_id, limit=query.limit
    )
    return [AuditEntryRecord.model_validate(entry) for entry in entries]
