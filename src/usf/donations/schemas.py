"""Pydantic models for the Ko-fi webhook body and the donation endpoints."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from usf.entitlements.types import Donation, DonationStatus


class KofiWebhookPayload(BaseModel):
    """Ko-fi webhook ``data`` object. Unknown fields are kept, not rejected."""

    model_config = ConfigDict(extra="allow", str_strip_whitespace=True)

    verification_token: str = Field(min_length=1)
    message_id: str = Field(min_length=1, max_length=128)
    timestamp: datetime
    type: Literal["Donation", "Subscription"]
    from_name: str = Field(min_length=1, max_length=128)
    amount: Decimal = Field(decimal_places=2)
    currency: str = Field(min_length=1, max_length=8)
    email: str | None = None
    is_public: bool | None = None
    message: str | None = None
    url: str | None = None
    kofi_transaction_id: str | None = None
    tier_name: str | None = None
    is_subscription_payment: bool | None = None
    is_first_subscription_payment: bool | None = None

    @field_validator("amount", mode="before")
    @classmethod
    def _amount_from_text(cls, value: Any) -> Any:
        # Ko-fi sends "3.00"; a JSON float goes through str() so 24.99 stays 24.99.
        if isinstance(value, float):
            return str(value)
        return value

    @field_validator("timestamp")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @field_validator("email", mode="before")
    @classmethod
    def _blank_email_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


# --- Responses ---


class DonationResponse(BaseModel):
    id: int
    owner_user_id: int | None
    amount: Decimal
    currency: str
    occurred_at: datetime
    provider: str
    external_id: str
    status: str
    donor_name: str | None = None
    is_anonymous: bool = False
    entitlements_processed: bool = False
    admin_notes: str | None = None

    @classmethod
    def from_domain(cls, donation: Donation) -> DonationResponse:
        return cls(
            id=donation.id,  # type: ignore[arg-type]
            owner_user_id=donation.owner_user_id,
            amount=donation.amount,
            currency=donation.currency,
            occurred_at=donation.occurred_at,
            provider=donation.provider.value,
            external_id=donation.external_id,
            status=donation.status.value,
            donor_name=donation.donor_name,
            is_anonymous=donation.is_anonymous,
            entitlements_processed=donation.entitlements_processed,
            admin_notes=donation.admin_notes,
        )


class WebhookResponse(BaseModel):
    outcome: str
    message: str
    donation: DonationResponse
    awarded_badge_ids: list[int] = []


class DonationListResponse(BaseModel):
    donations: list[DonationResponse]
    total: int


class TopDonorEntry(BaseModel):
    user_id: int
    username: str
    total_amount: Decimal
    donation_count: int


class TopDonorsResponse(BaseModel):
    donors: list[TopDonorEntry]


class ReconciliationResponse(BaseModel):
    donation: DonationResponse
    entitlements_ran: bool
    awarded_badge_ids: list[int] = []
    failed_steps: list[str] = []


class StatusChangeRequest(BaseModel):
    status: DonationStatus
    note: str | None = Field(default=None, max_length=500)


class ManualDonationRequest(BaseModel):
    user_id: int
    amount: Decimal = Field(gt=0, max_digits=10, decimal_places=2)
    currency: str = Field(default="USD", min_length=1, max_length=8)
    occurred_at: datetime | None = None
    notes: str | None = Field(default=None, max_length=500)


class UserTotalResponse(BaseModel):
    user_id: int
    total_amount: Decimal
