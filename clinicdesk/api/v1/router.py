"""API v1 router configuration."""

from fastapi import APIRouter

from clinicdesk.api.v1.endpoints import (
    appointments,
    audit,
    availability,
    billing,
    health,
    notifications,
    patients,
    payments,
    receipts,
    waitlist,
)

api_router = APIRouter()

# Include routers
api_router.include_router(health.router, tags=["Health"])
api_router.include_router(appointments.router, prefix="/appointments", tags=["Appointments"])
api_router.include_router(availability.router, prefix="/availability", tags=["Availability"])
api_router.include_router(waitlist.router, prefix="/waitlist", tags=["Waitlist"])
api_router.include_router(patients.router, prefix="/patients", tags=["Patients"])
api_router.include_router(billing.router, prefix="/billing", tags=["Billing"])
api_router.include_router(payments.router, prefix="/payments", tags=["Payments"])
api_router.include_router(receipts.router, prefix="/receipts", tags=["Receipts"])
api_router.include_router(notifications.router, tags=["Notifications"])
api_router.include_router(audit.router, prefix="/audit", tags=["Audit"])
