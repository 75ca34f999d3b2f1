"""Ko-fi webhook ingestion.

Validates an inbound event, resolves the donor, records the donation under
its (provider, external_id) key and, for resolved completed donations, runs
the entitlement engine. Ko-fi retries deliveries, so a repeat of an event
already recorded returns the stored donation and changes nothing.
"""

from __future__ import annotations

import hmac
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any

import structlog
from pydantic import ValidationError

from usf.config import Settings
from usf.donations.ledger import DonationLedger
from usf.donations.resolver import UNRESOLVED_NOTE, DonorResolver
from usf.donations.schemas import KofiWebhookPayload
from usf.entitlements.engine import EntitlementEngine, EntitlementReport
from usf.entitlements.types import Donation, DonationProvider, DonationStatus, to_money, utcnow
from usf.errors import AuthenticityRejected, ValidationRejected

logger = structlog.get_logger()


@dataclass(frozen=True)
class IngestorConfig:
    verification_token: str
    freshness_window: timedelta = timedelta(hours=1)
    min_amount: Decimal = Decimal("1")
    max_amount: Decimal = Decimal("10000")

    @classmethod
    def from_settings(cls, settings: Settings) -> IngestorConfig:
        return cls(
            verification_token=settings.kofi_verification_token,
            freshness_window=timedelta(seconds=settings.kofi_freshness_window_seconds),
            min_amount=settings.donation_min_amount,
            max_amount=settings.donation_max_amount,
        )


class IngestOutcome(str, Enum):
    CREATED = "created"  # new, owned, completed: entitlements ran (or were deferred)
    RECORDED = "recorded"  # new, owned, not completed (e.g. a subscription event)
    UNRESOLVED = "unresolved"  # new, waiting for an admin to assign an owner
    DUPLICATE = "duplicate"  # redelivery of an event already in the ledger


@dataclass
class IngestResult:
    outcome: IngestOutcome
    donation: Donation
    entitlements: EntitlementReport | None = None


def _json_safe(payload: Mapping[str, Any]) -> dict[str, Any]:
    return {k: v if isinstance(v, (str, int, bool, type(None))) else str(v) for k, v in payload.items()}


class WebhookIngestor:
    def __init__(
        self,
        config: IngestorConfig,
        resolver: DonorResolver,
        ledger: DonationLedger,
        engine: EntitlementEngine,
        defer_entitlements: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config
        self.resolver = resolver
        self.ledger = ledger
        self.engine = engine
        self.defer_entitlements = defer_entitlements
        self.clock = clock

    def validate(self, payload: Mapping[str, Any]) -> KofiWebhookPayload:
        """Parse and check a raw webhook body without side effects.

        Raises:
            ValidationRejected: missing/malformed fields, amount out of range,
                or a timestamp outside the freshness window.
            AuthenticityRejected: verification token mismatch.
        """
        try:
            event = KofiWebhookPayload.model_validate(payload)
        except ValidationError as e:
            errors = e.errors(include_url=False, include_context=False, include_input=False)
            logger.warning("webhook_invalid", errors=errors)
            msg = "Webhook payload is missing or has malformed fields"
            raise ValidationRejected(msg, errors=errors) from e

        expected = self.config.verification_token
        if not expected or not hmac.compare_digest(event.verification_token.encode(), expected.encode()):
            logger.warning(
                "security_event",
                kind="kofi_token_mismatch",
                message_id=event.message_id,
                token_configured=bool(expected),
            )
            msg = "Invalid webhook verification"
            raise AuthenticityRejected(msg)

        if not (self.config.min_amount <= event.amount <= self.config.max_amount):
            logger.warning("webhook_amount_out_of_range", message_id=event.message_id, amount=str(event.amount))
            msg = f"Amount {event.amount} outside accepted range"
            raise ValidationRejected(msg)

        now = self.clock()
        if not (now - self.config.freshness_window < event.timestamp <= now):
            logger.warning(
                "webhook_stale_or_future",
                message_id=event.message_id,
                timestamp=event.timestamp.isoformat(),
            )
            msg = "Webhook timestamp outside the accepted window"
            raise ValidationRejected(msg)

        return event

    async def ingest(self, payload: Mapping[str, Any]) -> IngestResult:
        event = self.validate(payload)
        log = logger.bind(message_id=event.message_id)

        resolution = await self.resolver.resolve(event.email, event.from_name)
        if resolution.resolved:
            status = DonationStatus.COMPLETED if event.type == "Donation" else DonationStatus.PENDING
            owner_id = resolution.user.id  # type: ignore[union-attr]
            notes = None
        else:
            status = DonationStatus.PENDING
            owner_id = None
            notes = UNRESOLVED_NOTE

        donation, created = await self.ledger.record(
            Donation(
                amount=to_money(event.amount),
                currency=event.currency.upper(),
                occurred_at=event.timestamp,
                provider=DonationProvider.KOFI,
                external_id=event.message_id,
                status=status,
                owner_user_id=owner_id,
                donor_name=event.from_name,
                donor_email=event.email,
                message=event.message,
                is_anonymous=event.is_public is False,
                raw_payload=_json_safe(payload),
                admin_notes=notes,
            )
        )

        if not created:
            return IngestResult(outcome=IngestOutcome.DUPLICATE, donation=donation)
        if not donation.is_resolved:
            log.warning("donation_needs_assignment", donation_id=donation.id, from_name=event.from_name)
            return IngestResult(outcome=IngestOutcome.UNRESOLVED, donation=donation)
        if donation.status is not DonationStatus.COMPLETED:
            return IngestResult(outcome=IngestOutcome.RECORDED, donation=donation)
        if self.defer_entitlements:
            return IngestResult(outcome=IngestOutcome.CREATED, donation=donation)

        report = await self.engine.process(donation)
        return IngestResult(
            outcome=IngestOutcome.CREATED,
            donation=await self.ledger.get(donation.id),  # type: ignore[arg-type]
            entitlements=report,
        )
