"""Badge endpoints: public catalog and grants, admin award/revoke/expire/stats."""

from __future__ import annotations

from fastapi import APIRouter, Body, Depends, Query

from usf.dependencies import Services, get_services, require_admin
from usf.entitlements.schemas import (
    AllBadgesResponse,
    AwardBadgeRequest,
    BadgeResponse,
    DonationStatsEntry,
    ExpireResponse,
    GrantResponse,
    KindCountEntry,
    RevokeBadgeRequest,
    StatisticsResponse,
    SupporterEntry,
    SupportersResponse,
    UserBadgesResponse,
)
from usf.errors import NotFoundError

router = APIRouter(prefix="/api/v1", tags=["Badges"])


# ── Public endpoints ──


@router.get("/badges", response_model=AllBadgesResponse)
async def list_badges(services: Services = Depends(get_services)):
    """All active badges in display order."""
    badges = await services.badges.list_badges()
    return AllBadgesResponse(badges=[BadgeResponse.from_domain(b) for b in badges])


@router.get("/badges/supporters", response_model=SupportersResponse)
async def list_supporters(services: Services = Depends(get_services)):
    """Users holding an active supporter or sponsor badge."""
    rows = await services.badges.supporters()
    return SupportersResponse(
        supporters=[
            SupporterEntry(
                user_id=grant.user_id,
                badge=BadgeResponse.from_domain(badge),
                awarded_at=grant.awarded_at,
                year=grant.year,
            )
            for grant, badge in rows
        ]
    )


# Registered before /badges/{badge_id} so the literal path wins.
@router.get("/badges/statistics", response_model=StatisticsResponse)
async def badge_statistics(
    services: Services = Depends(get_services),
    _admin: int | None = Depends(require_admin),
):
    """Grant counts per kind, upcoming expiries and donation totals."""
    stats = await services.badges.statistics()
    return StatisticsResponse(
        badges=[KindCountEntry(kind=c.kind.value, active_count=c.active_count) for c in stats.badges],
        expiring_in_7_days=stats.expiring_in_7_days,
        donations=DonationStatsEntry(
            total_amount=stats.donations.total_amount,
            total_donations=stats.donations.total_donations,
            unique_donors=stats.donations.unique_donors,
        ),
        generated_at=stats.generated_at,
    )


@router.get("/badges/{badge_id}", response_model=BadgeResponse)
async def get_badge(badge_id: int, services: Services = Depends(get_services)):
    return BadgeResponse.from_domain(await services.badges.get_badge(badge_id))


@router.get("/users/{user_id}/badges", response_model=UserBadgesResponse)
async def get_user_badges(
    user_id: int,
    include_inactive: bool = Query(default=False),
    services: Services = Depends(get_services),
):
    """A user's grants, newest first. Expired or revoked grants only on request."""
    if await services.store.get_user(user_id) is None:
        msg = f"User with ID {user_id} not found"
        raise NotFoundError(msg)
    if include_inactive:
        grants = await services.badges.user_grants(user_id, include_inactive=True)
    else:
        grants = await services.badges.active_grants(user_id)
    return UserBadgesResponse(
        user_id=user_id,
        grants=[GrantResponse.from_domain(g) for g in grants],
        total=len(grants),
    )


# ── Admin endpoints ──


@router.post("/badges/award", response_model=GrantResponse, status_code=201)
async def award_badge(
    body: AwardBadgeRequest,
    services: Services = Depends(get_services),
    admin_user_id: int | None = Depends(require_admin),
):
    grant = await services.badges.award(
        body.user_id,
        body.badge_id,
        reason=body.reason,
        awarded_by_user_id=admin_user_id,
        metadata=body.metadata,
        year=body.year,
        expires_at=body.expires_at,
    )
    return GrantResponse.from_domain(grant)


@router.delete("/badges/user/{user_id}/badge/{badge_id}", response_model=GrantResponse)
async def revoke_badge(
    user_id: int,
    badge_id: int,
    body: RevokeBadgeRequest | None = Body(default=None),
    services: Services = Depends(get_services),
    admin_user_id: int | None = Depends(require_admin),
):
    """Deactivate a grant. The row is kept with the revocation audit fields."""
    grant = await services.badges.revoke(
        user_id,
        badge_id,
        reason=body.reason if body else None,
        revoked_by_user_id=admin_user_id,
    )
    return GrantResponse.from_domain(grant)


@router.post("/badges/expire", response_model=ExpireResponse)
async def expire_badges(
    services: Services = Depends(get_services),
    _admin: int | None = Depends(require_admin),
):
    """Run the expiration sweep now instead of waiting for the worker."""
    result = await services.sweeper.sweep()
    return ExpireResponse(expired=result.expired, roles_cleared=result.roles_cleared)
