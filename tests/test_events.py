"""Tests for post-commit side effects."""

import pytest
from sqlalchemy import func, select

from clinicdesk.core.events import PostCommitHooks
from clinicdesk.models.notifications import audit_entries
from clinicdesk.services.audit_service import AuditService


@pytest.mark.asyncio
async def test_failing_hook_does_not_stop_the_rest(db_session) -> None:
    calls: list[str] = []

    async def broken(db) -> None:
        calls.append("broken")
        raise RuntimeError("mail server down")

    hooks = PostCommitHooks()
    hooks.add("audit", AuditService.hook("Bill", "b-1", "u-1", "reconciled", {"added": []}))
    hooks.add("notify", broken)
    hooks.add("audit_again", AuditService.hook("Bill", "b-1", "u-1", "discarded"))
    assert len(hooks) == 3

    failures = await hooks.run(db_session)

    assert failures == 1
    assert calls == ["broken"]
    assert len(hooks) == 0
    result = await db_session.execute(select(func.count()).select_from(audit_entries))
    assert result.scalar() == 2


@pytest.mark.asyncio
async def test_failed_hook_writes_are_rolled_back(db_session) -> None:
    async def half_done(db) -> None:
        await AuditService.record(db, "Payment", "p-1", "u-1", "payment_success")
        raise RuntimeError("boom")

    hooks = PostCommitHooks()
    hooks.add("half_done", half_done)
    await hooks.run(db_session)

    result = await db_session.execute(select(func.count()).select_from(audit_entries))
    assert result.scalar() == 0
