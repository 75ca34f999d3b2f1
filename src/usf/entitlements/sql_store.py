"""Postgres EntitlementStore on async SQLAlchemy.

Uniqueness races are settled by the database: inserts use
``ON CONFLICT DO NOTHING`` against the ledger and grant indexes, the active
supporter renewal is an ``ON CONFLICT DO UPDATE`` upsert, and the sweeper is
a single conditional ``UPDATE ... RETURNING``.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import delete, func, or_, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from usf.db.models import BadgeRow, DonationRow, User, UserBadge
from usf.entitlements.store import EntitlementStore
from usf.entitlements.types import (
    Badge,
    BadgeKind,
    Donation,
    DonationProvider,
    DonationStatus,
    DonationTotals,
    DonorTotal,
    ExpiredGrant,
    Grant,
    KindCount,
    UserRecord,
    to_money,
)

_ACTIVE_GRANT_WHERE = text("is_active AND year IS NULL")


def _user(row: User) -> UserRecord:
    return UserRecord(
        id=row.id,
        username=row.username,
        email=row.email,
        discord_username=row.discord_username,
        custom_role=row.custom_role,
    )


def _badge(row: BadgeRow) -> Badge:
    return Badge(
        id=row.id,
        name=row.name,
        kind=BadgeKind(row.kind),
        icon=row.icon,
        color=row.color,
        description=row.description,
        background_color=row.background_color,
        display_order=row.display_order,
        is_active=row.is_active,
        is_manually_awardable=row.is_manually_awardable,
    )


def _donation(row: DonationRow) -> Donation:
    return Donation(
        id=row.id,
        owner_user_id=row.owner_user_id,
        amount=to_money(row.amount),
        currency=row.currency,
        occurred_at=row.occurred_at,
        provider=DonationProvider(row.provider),
        external_id=row.external_id,
        status=DonationStatus(row.status),
        donor_name=row.donor_name,
        donor_email=row.donor_email,
        message=row.message,
        is_anonymous=row.is_anonymous,
        raw_payload=row.raw_payload,
        entitlements_processed=row.entitlements_processed,
        admin_notes=row.admin_notes,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _grant(row: UserBadge) -> Grant:
    return Grant(
        id=row.id,
        user_id=row.user_id,
        badge_id=row.badge_id,
        awarded_at=row.awarded_at,
        expires_at=row.expires_at,
        year=row.year,
        reason=row.reason,
        awarded_by_user_id=row.awarded_by_user_id,
        metadata=dict(row.grant_metadata or {}),
        is_active=row.is_active,
        revoked_at=row.revoked_at,
        revoked_reason=row.revoked_reason,
        revoked_by_user_id=row.revoked_by_user_id,
    )


def _donation_values(donation: Donation) -> dict[str, Any]:
    return {
        "owner_user_id": donation.owner_user_id,
        "amount": to_money(donation.amount),
        "currency": donation.currency,
        "occurred_at": donation.occurred_at,
        "provider": donation.provider,
        "external_id": donation.external_id,
        "status": donation.status,
        "donor_name": donation.donor_name,
        "donor_email": donation.donor_email,
        "message": donation.message,
        "is_anonymous": donation.is_anonymous,
        "raw_payload": donation.raw_payload,
        "admin_notes": donation.admin_notes,
    }


def _grant_values(grant: Grant) -> dict[str, Any]:
    return {
        "user_id": grant.user_id,
        "badge_id": grant.badge_id,
        "awarded_at": grant.awarded_at,
        "expires_at": grant.expires_at,
        "year": grant.year,
        "reason": grant.reason,
        "awarded_by_user_id": grant.awarded_by_user_id,
        "grant_metadata": grant.metadata or {},
        "is_active": grant.is_active,
        "revoked_at": grant.revoked_at,
        "revoked_reason": grant.revoked_reason,
        "revoked_by_user_id": grant.revoked_by_user_id,
    }


class SqlAlchemyStore(EntitlementStore):
    """EntitlementStore bound to one AsyncSession; each write commits."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    @asynccontextmanager
    async def _writing(self) -> AsyncIterator[None]:
        try:
            yield
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

    # --- Users ---

    async def get_user(self, user_id: int) -> UserRecord | None:
        row = await self.db.get(User, user_id)
        return _user(row) if row else None

    async def _find_user(self, *criteria: Any) -> UserRecord | None:
        result = await self.db.execute(select(User).where(*criteria).order_by(User.id).limit(1))
        row = result.scalar_one_or_none()
        return _user(row) if row else None

    async def find_user_by_email(self, email: str) -> UserRecord | None:
        return await self._find_user(func.lower(User.email) == email.strip().lower())

    async def find_user_by_username(self, username: str) -> UserRecord | None:
        return await self._find_user(User.username == username)

    async def find_user_by_discord_username(self, discord_username: str) -> UserRecord | None:
        return await self._find_user(User.discord_username == discord_username)

    async def clear_lapsed_custom_roles(self, now: datetime) -> int:
        held = (
            select(UserBadge.id)
            .join(BadgeRow, BadgeRow.id == UserBadge.badge_id)
            .where(UserBadge.user_id == User.id, BadgeRow.kind == BadgeKind.ACTIVE_SUPPORTER)
        )
        current = held.where(
            UserBadge.is_active.is_(True),
            or_(UserBadge.expires_at.is_(None), UserBadge.expires_at > now),
        )
        async with self._writing():
            result = await self.db.execute(
                update(User)
                .where(
                    User.custom_role.is_not(None),
                    held.correlate(User).exists(),
                    ~current.correlate(User).exists(),
                )
                .values(custom_role=None)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount or 0

    # --- Badges ---

    async def get_badge(self, badge_id: int) -> Badge | None:
        row = await self.db.get(BadgeRow, badge_id)
        return _badge(row) if row else None

    async def get_badge_by_kind(self, kind: BadgeKind) -> Badge | None:
        result = await self.db.execute(
            select(BadgeRow)
            .where(BadgeRow.kind == kind, BadgeRow.is_active.is_(True))
            .order_by(BadgeRow.display_order, BadgeRow.id)
            .limit(1)
        )
        row = result.scalar_one_or_none()
        return _badge(row) if row else None

    async def list_badges(self, active_only: bool = True) -> list[Badge]:
        stmt = select(BadgeRow).order_by(BadgeRow.display_order, BadgeRow.name)
        if active_only:
            stmt = stmt.where(BadgeRow.is_active.is_(True))
        result = await self.db.execute(stmt)
        return [_badge(row) for row in result.scalars()]

    async def insert_badge(self, badge: Badge) -> Badge | None:
        stmt = (
            pg_insert(BadgeRow)
            .values(
                name=badge.name,
                description=badge.description,
                kind=badge.kind,
                icon=badge.icon,
                color=badge.color,
                background_color=badge.background_color,
                display_order=badge.display_order,
                is_active=badge.is_active,
                is_manually_awardable=badge.is_manually_awardable,
            )
            .on_conflict_do_nothing(index_elements=["name"])
            .returning(BadgeRow.id)
        )
        async with self._writing():
            new_id = (await self.db.execute(stmt)).scalar_one_or_none()
        return await self.get_badge(new_id) if new_id is not None else None

    # --- Donations ---

    async def get_donation(self, donation_id: int) -> Donation | None:
        row = await self.db.get(DonationRow, donation_id, populate_existing=True)
        return _donation(row) if row else None

    async def find_donation(self, provider: DonationProvider, external_id: str) -> Donation | None:
        result = await self.db.execute(
            select(DonationRow)
            .where(DonationRow.provider == provider, DonationRow.external_id == external_id)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return _donation(row) if row else None

    async def insert_donation(self, donation: Donation) -> Donation | None:
        stmt = (
            pg_insert(DonationRow)
            .values(**_donation_values(donation), entitlements_processed=donation.entitlements_processed)
            .on_conflict_do_nothing(constraint="uq_donations_provider_external_id")
            .returning(DonationRow.id)
        )
        async with self._writing():
            new_id = (await self.db.execute(stmt)).scalar_one_or_none()
        return await self.get_donation(new_id) if new_id is not None else None

    async def update_donation(self, donation: Donation) -> Donation:
        # entitlements_processed is only ever set through mark_entitlements_processed.
        stmt = (
            update(DonationRow)
            .where(DonationRow.id == donation.id)
            .values(**_donation_values(donation))
            .execution_options(synchronize_session=False)
        )
        async with self._writing():
            await self.db.execute(stmt)
        stored = await self.get_donation(donation.id)  # type: ignore[arg-type]
        assert stored is not None
        return stored

    async def mark_entitlements_processed(self, donation_id: int) -> bool:
        async with self._writing():
            result = await self.db.execute(
                update(DonationRow)
                .where(DonationRow.id == donation_id, DonationRow.entitlements_processed.is_(False))
                .values(entitlements_processed=True)
                .execution_options(synchronize_session=False)
            )
        return bool(result.rowcount)

    async def sum_completed_donations(self, user_id: int) -> Decimal:
        result = await self.db.execute(
            select(func.coalesce(func.sum(DonationRow.amount), 0)).where(
                DonationRow.owner_user_id == user_id,
                DonationRow.status == DonationStatus.COMPLETED,
            )
        )
        return to_money(str(result.scalar_one()))

    async def list_donations(
        self,
        owner_user_id: int | None = None,
        unresolved_only: bool = False,
        limit: int | None = None,
    ) -> list[Donation]:
        stmt = select(DonationRow).order_by(DonationRow.occurred_at.desc(), DonationRow.id.desc())
        if owner_user_id is not None:
            stmt = stmt.where(DonationRow.owner_user_id == owner_user_id)
        if unresolved_only:
            stmt = stmt.where(DonationRow.owner_user_id.is_(None))
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.db.execute(stmt.execution_options(populate_existing=True))
        return [_donation(row) for row in result.scalars()]

    async def list_unprocessed_donations(self, limit: int) -> list[Donation]:
        result = await self.db.execute(
            select(DonationRow)
            .where(
                DonationRow.status == DonationStatus.COMPLETED,
                DonationRow.owner_user_id.is_not(None),
                DonationRow.entitlements_processed.is_(False),
            )
            .order_by(DonationRow.id)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return [_donation(row) for row in result.scalars()]

    async def donation_totals(self) -> DonationTotals:
        result = await self.db.execute(
            select(
                func.coalesce(func.sum(DonationRow.amount), 0),
                func.count(DonationRow.id),
                func.count(func.distinct(DonationRow.owner_user_id)),
            ).where(DonationRow.status == DonationStatus.COMPLETED)
        )
        total, count, donors = result.one()
        return DonationTotals(total_amount=to_money(str(total)), total_donations=count, unique_donors=donors)

    async def top_donors(self, limit: int) -> list[DonorTotal]:
        total_col = func.sum(DonationRow.amount).label("total_amount")
        result = await self.db.execute(
            select(
                DonationRow.owner_user_id,
                User.username,
                total_col,
                func.count(DonationRow.id).label("donation_count"),
            )
            .join(User, User.id == DonationRow.owner_user_id)
            .where(
                DonationRow.status == DonationStatus.COMPLETED,
                DonationRow.is_anonymous.is_(False),
            )
            .group_by(DonationRow.owner_user_id, User.username)
            .order_by(total_col.desc())
            .limit(limit)
        )
        return [
            DonorTotal(
                user_id=row.owner_user_id,
                username=row.username,
                total_amount=to_money(str(row.total_amount)),
                donation_count=row.donation_count,
            )
            for row in result
        ]

    # --- Grants ---

    async def get_grant(self, grant_id: int) -> Grant | None:
        row = await self.db.get(UserBadge, grant_id, populate_existing=True)
        return _grant(row) if row else None

    async def find_grant(self, user_id: int, badge_id: int, active_only: bool = False) -> Grant | None:
        stmt = (
            select(UserBadge)
            .where(UserBadge.user_id == user_id, UserBadge.badge_id == badge_id)
            .order_by(UserBadge.awarded_at.desc(), UserBadge.id.desc())
            .limit(1)
        )
        if active_only:
            stmt = stmt.where(UserBadge.is_active.is_(True))
        result = await self.db.execute(stmt.execution_options(populate_existing=True))
        row = result.unique().scalar_one_or_none()
        return _grant(row) if row else None

    async def find_year_grant(self, user_id: int, badge_id: int, year: int) -> Grant | None:
        result = await self.db.execute(
            select(UserBadge)
            .where(UserBadge.user_id == user_id, UserBadge.badge_id == badge_id, UserBadge.year == year)
            .execution_options(populate_existing=True)
        )
        row = result.unique().scalar_one_or_none()
        return _grant(row) if row else None

    async def insert_grant(self, grant: Grant) -> Grant | None:
        stmt = pg_insert(UserBadge).values(**_grant_values(grant))
        if grant.year is not None:
            stmt = stmt.on_conflict_do_nothing(
                index_elements=["user_id", "badge_id", "year"],
                index_where=text("year IS NOT NULL"),
            )
        else:
            stmt = stmt.on_conflict_do_nothing(
                index_elements=["user_id", "badge_id"],
                index_where=_ACTIVE_GRANT_WHERE,
            )
        async with self._writing():
            new_id = (await self.db.execute(stmt.returning(UserBadge.id))).scalar_one_or_none()
        if new_id is None:
            return None
        return await self.get_grant(new_id)

    async def upsert_exclusive_grant(self, grant: Grant) -> Grant:
        values = _grant_values(grant)
        async with self._writing():
            existing = (
                await self.db.execute(
                    select(UserBadge.id)
                    .where(UserBadge.user_id == grant.user_id, UserBadge.badge_id == grant.badge_id)
                    .order_by(UserBadge.id)
                    .with_for_update()
                )
            ).scalars().all()
            if existing:
                keep, extras = existing[0], existing[1:]
                if extras:
                    await self.db.execute(delete(UserBadge).where(UserBadge.id.in_(extras)))
                await self.db.execute(
                    update(UserBadge)
                    .where(UserBadge.id == keep)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                grant_id = keep
            else:
                stmt = pg_insert(UserBadge).values(**values)
                stmt = stmt.on_conflict_do_update(
                    index_elements=["user_id", "badge_id"],
                    index_where=_ACTIVE_GRANT_WHERE,
                    set_={
                        "awarded_at": stmt.excluded.awarded_at,
                        "expires_at": stmt.excluded.expires_at,
                        "reason": stmt.excluded.reason,
                        "awarded_by_user_id": stmt.excluded.awarded_by_user_id,
                        "grant_metadata": stmt.excluded.grant_metadata,
                        "is_active": stmt.excluded.is_active,
                        "revoked_at": None,
                        "revoked_reason": None,
                        "revoked_by_user_id": None,
                    },
                )
                grant_id = (await self.db.execute(stmt.returning(UserBadge.id))).scalar_one()
        stored = await self.get_grant(grant_id)
        assert stored is not None
        return stored

    async def update_grant(self, grant: Grant) -> Grant:
        async with self._writing():
            await self.db.execute(
                update(UserBadge)
                .where(UserBadge.id == grant.id)
                .values(**_grant_values(grant))
                .execution_options(synchronize_session=False)
            )
        stored = await self.get_grant(grant.id)  # type: ignore[arg-type]
        assert stored is not None
        return stored

    async def list_user_grants(self, user_id: int, active_only: bool = False) -> list[Grant]:
        stmt = (
            select(UserBadge)
            .join(BadgeRow, BadgeRow.id == UserBadge.badge_id)
            .where(UserBadge.user_id == user_id)
            .order_by(BadgeRow.display_order, UserBadge.awarded_at.desc())
        )
        if active_only:
            stmt = stmt.where(UserBadge.is_active.is_(True))
        result = await self.db.execute(stmt.execution_options(populate_existing=True))
        return [_grant(row) for row in result.unique().scalars()]

    async def list_active_grants_by_kind(self, kinds: Iterable[BadgeKind]) -> list[tuple[Grant, Badge]]:
        result = await self.db.execute(
            select(UserBadge)
            .join(BadgeRow, BadgeRow.id == UserBadge.badge_id)
            .where(BadgeRow.kind.in_(list(kinds)), UserBadge.is_active.is_(True))
            .order_by(UserBadge.awarded_at)
            .execution_options(populate_existing=True)
        )
        return [(_grant(row), _badge(row.badge)) for row in result.unique().scalars()]

    async def expire_grants(self, now: datetime) -> list[ExpiredGrant]:
        async with self._writing():
            result = await self.db.execute(
                update(UserBadge)
                .where(
                    UserBadge.is_active.is_(True),
                    UserBadge.expires_at.is_not(None),
                    UserBadge.expires_at <= now,
                )
                .values(is_active=False)
                .returning(UserBadge.id, UserBadge.user_id, UserBadge.badge_id)
                .execution_options(synchronize_session=False)
            )
            rows = result.all()
        if not rows:
            return []
        kinds_result = await self.db.execute(
            select(BadgeRow.id, BadgeRow.kind).where(BadgeRow.id.in_({r.badge_id for r in rows}))
        )
        kinds = {badge_id: BadgeKind(kind) for badge_id, kind in kinds_result}
        return [
            ExpiredGrant(grant_id=r.id, user_id=r.user_id, badge_id=r.badge_id, kind=kinds[r.badge_id])
            for r in rows
        ]

    async def count_active_grants_by_kind(self) -> list[KindCount]:
        result = await self.db.execute(
            select(BadgeRow.kind, func.count(UserBadge.id))
            .join(BadgeRow, BadgeRow.id == UserBadge.badge_id)
            .where(UserBadge.is_active.is_(True))
            .group_by(BadgeRow.kind)
            .order_by(BadgeRow.kind)
        )
        return [KindCount(kind=BadgeKind(kind), active_count=count) for kind, count in result]

    async def count_grants_expiring(self, start: datetime, end: datetime) -> int:
        result = await self.db.execute(
            select(func.count(UserBadge.id)).where(
                UserBadge.is_active.is_(True),
                UserBadge.expires_at.between(start, end),
            )
        )
        return result.scalar_one()
