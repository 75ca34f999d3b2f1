"""Donation endpoints: the Ko-fi webhook and admin reconciliation."""

from __future__ import annotations

import json
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Query, Request

from usf.dependencies import Services, get_services, require_admin
from usf.donations.ingestor import IngestOutcome, IngestResult
from usf.donations.reconciliation import ReconciliationResult
from usf.donations.schemas import (
    DonationListResponse,
    DonationResponse,
    ManualDonationRequest,
    ReconciliationResponse,
    StatusChangeRequest,
    TopDonorEntry,
    TopDonorsResponse,
    UserTotalResponse,
    WebhookResponse,
)
from usf.entitlements.types import utcnow
from usf.errors import NotFoundError, ValidationRejected

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/donations", tags=["Donations"])

_OUTCOME_MESSAGES = {
    IngestOutcome.CREATED: "Donation processed successfully",
    IngestOutcome.RECORDED: "Donation recorded",
    IngestOutcome.UNRESOLVED: "Donation recorded, awaiting manual assignment",
    IngestOutcome.DUPLICATE: "Donation already processed",
}


async def _read_webhook_body(request: Request) -> dict[str, Any]:
    """Ko-fi posts form data with a JSON ``data`` field; plain JSON is accepted too."""
    content_type = request.headers.get("content-type", "")
    try:
        if content_type.startswith(("application/x-www-form-urlencoded", "multipart/form-data")):
            form = await request.form()
            raw = form.get("data")
            if not isinstance(raw, str):
                msg = "Missing 'data' form field"
                raise ValidationRejected(msg)
            body = json.loads(raw)
        else:
            body = await request.json()
    except ValueError as e:
        msg = "Webhook body is not valid UTF-8 JSON"
        raise ValidationRejected(msg) from e
    if not isinstance(body, dict):
        msg = "Webhook body must be a JSON object"
        raise ValidationRejected(msg)
    return body


def _reconciliation_response(result: ReconciliationResult) -> ReconciliationResponse:
    report = result.entitlements
    return ReconciliationResponse(
        donation=DonationResponse.from_domain(result.donation),
        entitlements_ran=report is not None,
        awarded_badge_ids=[g.badge_id for g in report.awarded] if report else [],
        failed_steps=report.failed_steps if report else [],
    )


async def _enqueue_entitlements(request: Request, result: IngestResult) -> None:
    pool = getattr(request.app.state, "arq_pool", None)
    if pool is None:
        # No queue configured; the retry cron picks the donation up.
        logger.warning("entitlements_not_enqueued", donation_id=result.donation.id)
        return
    await pool.enqueue_job("process_donation_entitlements", result.donation.id)


# ── Webhook ──


@router.post("/webhook/kofi", response_model=WebhookResponse)
async def kofi_webhook(request: Request, services: Services = Depends(get_services)):
    """Receive a Ko-fi donation event.

    Always 200 for anything Ko-fi should not retry: new, duplicate and
    unresolved donations alike.
    """
    body = await _read_webhook_body(request)
    result = await services.ingestor.ingest(body)

    if result.outcome is IngestOutcome.CREATED and result.entitlements is None:
        await _enqueue_entitlements(request, result)

    return WebhookResponse(
        outcome=result.outcome.value,
        message=_OUTCOME_MESSAGES[result.outcome],
        donation=DonationResponse.from_domain(result.donation),
        awarded_badge_ids=[g.badge_id for g in result.entitlements.awarded] if result.entitlements else [],
    )


# ── Admin endpoints ──


@router.get("", response_model=DonationListResponse)
async def list_donations(
    user_id: int | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    services: Services = Depends(get_services),
    _admin: int | None = Depends(require_admin),
):
    donations = await services.ledger.list_donations(owner_user_id=user_id, limit=limit)
    return DonationListResponse(
        donations=[DonationResponse.from_domain(d) for d in donations],
        total=len(donations),
    )


@router.get("/unresolved", response_model=DonationListResponse)
async def list_unresolved(
    limit: int = Query(default=100, ge=1, le=1000),
    services: Services = Depends(get_services),
    _admin: int | None = Depends(require_admin),
):
    """Donations the webhook could not match to a user."""
    donations = await services.ledger.unresolved(limit=limit)
    return DonationListResponse(
        donations=[DonationResponse.from_domain(d) for d in donations],
        total=len(donations),
    )


@router.get("/top-donors", response_model=TopDonorsResponse)
async def top_donors(
    limit: int = Query(default=10, ge=1, le=100),
    services: Services = Depends(get_services),
    _admin: int | None = Depends(require_admin),
):
    donors = await services.ledger.top_donors(limit)
    return TopDonorsResponse(
        donors=[
            TopDonorEntry(
                user_id=d.user_id,
                username=d.username,
                total_amount=d.total_amount,
                donation_count=d.donation_count,
            )
            for d in donors
        ]
    )


@router.post("/manual", response_model=ReconciliationResponse, status_code=201)
async def record_manual_donation(
    body: ManualDonationRequest,
    services: Services = Depends(get_services),
    admin_user_id: int | None = Depends(require_admin),
):
    """Record a donation received outside Ko-fi."""
    result = await services.reconciliation.record_manual(
        body.user_id,
        body.amount,
        occurred_at=body.occurred_at or utcnow(),
        currency=body.currency.upper(),
        notes=body.notes,
        admin_user_id=admin_user_id,
    )
    return _reconciliation_response(result)


@router.get("/user/{user_id}/total", response_model=UserTotalResponse)
async def user_total(
    user_id: int,
    services: Services = Depends(get_services),
    _admin: int | None = Depends(require_admin),
):
    """Lifetime completed-donation total, the figure sponsor eligibility reads."""
    if await services.store.get_user(user_id) is None:
        msg = f"User with ID {user_id} not found"
        raise NotFoundError(msg)
    return UserTotalResponse(user_id=user_id, total_amount=await services.ledger.completed_total(user_id))


@router.get("/{donation_id}", response_model=DonationResponse)
async def get_donation(
    donation_id: int,
    services: Services = Depends(get_services),
    _admin: int | None = Depends(require_admin),
):
    return DonationResponse.from_domain(await services.ledger.get(donation_id))


@router.patch("/{donation_id}/assign/{user_id}", response_model=ReconciliationResponse)
async def assign_donation(
    donation_id: int,
    user_id: int,
    services: Services = Depends(get_services),
    admin_user_id: int | None = Depends(require_admin),
):
    """Attach an unresolved donation to a user and grant what it earns."""
    result = await services.reconciliation.assign(donation_id, user_id, admin_user_id=admin_user_id)
    return _reconciliation_response(result)


@router.patch("/{donation_id}/status", response_model=ReconciliationResponse)
async def change_donation_status(
    donation_id: int,
    body: StatusChangeRequest,
    services: Services = Depends(get_services),
    admin_user_id: int | None = Depends(require_admin),
):
    result = await services.reconciliation.set_status(
        donation_id,
        body.status,
        admin_user_id=admin_user_id,
        note=body.note,
    )
    return _reconciliation_response(result)
