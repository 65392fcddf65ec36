"""Cancellation and reschedule policy.

Pure decision functions: no database access, no clock reads. The caller
supplies ``now`` and the privilege flags derived from the actor's role.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from clinicdesk.config import Settings, settings
from clinicdesk.schemas.appointments import (
    APPROVED_STATUSES,
    AppointmentStatus,
)

ALREADY_CANCELLED = "already_cancelled"
TERMINAL = "terminal"
APPROVED_LOCKED = "approved_locked"
WITHIN_CUTOFF = "within_cutoff"
INCOMPLETE_SLOT = "incomplete_slot"
PAST_SLOT = "past_slot"
INVALID_RANGE = "invalid_range"

_CLOSED_STATUSES = frozenset({AppointmentStatus.COMPLETED, AppointmentStatus.NO_SHOW})


@dataclass(frozen=True)
class PolicySettings:
    """Business constants for the cancel/reschedule gates."""

    cancel_cutoff_hours: int = 12
    approved_statuses: frozenset[AppointmentStatus] = field(
        default_factory=lambda: APPROVED_STATUSES
    )

    @classmethod
    def from_settings(cls, config: Settings = settings) -> "PolicySettings":
        """Build policy constants from application settings."""
        return cls(cancel_cutoff_hours=config.cancel_cutoff_hours)

    @property
    def cutoff(self) -> timedelta:
        return timedelta(hours=self.cancel_cutoff_hours)


@dataclass(frozen=True)
class PolicyDecision:
    """Result of a policy check; ``code`` identifies the failed rule."""

    ok: bool
    reason: str | None = None
    code: str | None = None


ALLOWED = PolicyDecision(ok=True)


def _status(appointment: dict[str, Any]) -> AppointmentStatus:
    return AppointmentStatus(appointment["status"])


def _approval_gates(
    appointment: dict[str, Any],
    now: datetime,
    action: str,
    allow_approved: bool,
    ignore_cutoff: bool,
    policy: PolicySettings,
) -> PolicyDecision | None:
    status = _status(appointment)
    if status not in policy.approved_statuses:
        return None

    if not allow_approved:
        return PolicyDecision(
            ok=False,
            reason=f"Approved appointments can only be {action} by clinic staff",
            code=APPROVED_LOCKED,
        )

    if not ignore_cutoff and appointment["starts_at"] - now < policy.cutoff:
        return PolicyDecision(
            ok=False,
            reason=(
                f"Approved appointments cannot be {action} less than "
                f"{policy.cancel_cutoff_hours} hours before the start time"
            ),
            code=WITHIN_CUTOFF,
        )

    return None


def can_cancel(
    appointment: dict[str, Any],
    now: datetime,
    allow_approved: bool = False,
    ignore_cutoff: bool = False,
    policy: PolicySettings | None = None,
) -> PolicyDecision:
    """
    Decide whether an appointment may be cancelled.

    Rules are checked in order: already cancelled, terminal status, approved
    lock, cutoff window.

    Args:
        appointment: Appointment row (``status`` and ``starts_at`` are read)
        now: Current time, timezone-aware
        allow_approved: Actor may cancel approved appointments
        ignore_cutoff: Actor may cancel inside the cutoff window
        policy: Policy constants (defaults from settings)

    Returns:
        PolicyDecision
    """
    policy = policy or PolicySettings.from_settings()
    status = _status(appointment)

    if status == AppointmentStatus.CANCELLED:
        return PolicyDecision(
            ok=False, reason="Appointment is already cancelled", code=ALREADY_CANCELLED
        )

    if status in _CLOSED_STATUSES:
        return PolicyDecision(
            ok=False,
            reason=f"Appointment is {status.value.lower()} and cannot be cancelled",
            code=TERMINAL,
        )

    blocked = _approval_gates(
        appointment, now, "cancelled", allow_approved, ignore_cutoff, policy
    )
    return blocked if blocked is not None else ALLOWED


def can_reschedule(
    appointment: dict[str, Any],
    new_starts_at: datetime | None,
    new_ends_at: datetime | None,
    now: datetime,
    allow_approved: bool = False,
    ignore_cutoff: bool = False,
    policy: PolicySettings | None = None,
) -> PolicyDecision:
    """
    Decide whether an appointment may be moved to a new slot.

    The past-slot rule applies to every actor; privilege flags only lift the
    approved lock and the cutoff window.
    """
    policy = policy or PolicySettings.from_settings()

    if new_starts_at is None or new_ends_at is None:
        return PolicyDecision(
            ok=False,
            reason="New slot must include both start and end time",
            code=INCOMPLETE_SLOT,
        )

    status = _status(appointment)
    if status == AppointmentStatus.CANCELLED or status in _CLOSED_STATUSES:
        return PolicyDecision(
            ok=False,
            reason=f"Appointment is {status.value.lower()} and cannot be rescheduled",
            code=TERMINAL,
        )

    blocked = _approval_gates(
        appointment, now, "rescheduled", allow_approved, ignore_cutoff, policy
    )
    if blocked is not None:
        return blocked

    if new_starts_at <= now:
        return PolicyDecision(
            ok=False, reason="Cannot reschedule to a past time", code=PAST_SLOT
        )

    if new_ends_at <= new_starts_at:
        return PolicyDecision(
            ok=False, reason="End time must be after start time", code=INVALID_RANGE
        )

    return ALLOWED
