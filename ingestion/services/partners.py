"""
Partner Accounts - identity, configuration and webhook authentication.

Partners submit venues, dishes, promotions and availability through the
webhook. Each partner has one PartnerCredentials row:

- api_key_hash: SHA-256 of the API key; plaintext keys are never stored and
  are only returned once, from create() and rotate_credentials()
- webhook_secret: HMAC key used to sign webhook bodies
- previous_*: the credentials replaced by the last rotation, accepted until
  previous_valid_until (grace window, default 24h)

Webhook signature:
    signature = hex(HMAC-SHA256(secret, f"{timestamp}.{raw_body}"))
    timestamp = Unix seconds; requests more than 5 minutes off are rejected
    before the signature is looked at (replay protection)

Usage:
    created = accounts.create(name="Hiltl", partner_type="chain")
    partner = accounts.get_by_api_key(created.api_key)
    accounts.verify_webhook_signature(partner.id, body, signature, timestamp)
"""

import hashlib
import hmac
import logging
import secrets
import time
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Union

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from ingestion.exceptions import (
    NotFoundError,
    SignatureError,
    StaleTimestampError,
    ValidationError,
)
from ingestion.models import (
    EntityType,
    Partner,
    PartnerCredentials,
    PartnerStatus,
    PartnerType,
)
from ingestion.repository import Repository
from ingestion.services.cache import PARTNERS
from ingestion.utils.numbers import clamp, round_half_up

logger = logging.getLogger(__name__)

API_KEY_PREFIX = "pad_live_"
WEBHOOK_SECRET_PREFIX = "whsec_"

UPDATABLE_FIELDS = {
    "name",
    "partner_type",
    "contact",
    "data_format",
    "allowed_entity_types",
    "markets",
    "auto_approve_threshold",
    "requires_manual_review",
    "callback_url",
    "requests_per_hour",
    "requests_per_day",
}


def generate_api_key() -> str:
    return f"{API_KEY_PREFIX}{secrets.token_urlsafe(24)}"


def generate_webhook_secret() -> str:
    return f"{WEBHOOK_SECRET_PREFIX}{secrets.token_urlsafe(24)}"


def hash_api_key(api_key: str) -> str:
    """SHA-256 hex digest used to store and look up API keys."""
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def _to_bytes(value: Union[str, bytes]) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def sign_payload(secret: str, timestamp: Union[str, int], raw_body: Union[str, bytes]) -> str:
    """Compute the webhook signature a partner is expected to send."""
    message = _to_bytes(f"{timestamp}.") + _to_bytes(raw_body)
    return hmac.new(_to_bytes(secret), message, hashlib.sha256).hexdigest()


@dataclass
class PartnerCreation:
    """A new partner with its one-time plaintext credentials."""

    partner: Partner
    api_key: str
    webhook_secret: str


@dataclass
class CredentialRotation:
    """New plaintext credentials and the end of the old ones' grace window."""

    api_key: str
    webhook_secret: str
    previous_valid_until: datetime


class PartnerAccounts:
    """
    Partner management and webhook authentication.

    Args:
        partners: Repository over Partner
        credentials: Repository over PartnerCredentials
        cache: QueryCache invalidated on partner mutations
    """

    def __init__(
        self,
        partners: Optional[Repository] = None,
        credentials: Optional[Repository] = None,
        cache=None,
    ):
        self.partners = partners or Repository(Partner, cache=cache, cache_namespaces=[PARTNERS])
        self.credentials = credentials or Repository(PartnerCredentials)

    @property
    def grace_period(self) -> timedelta:
        return timedelta(hours=getattr(settings, "PARTNER_CREDENTIAL_GRACE_HOURS", 24))

    @property
    def timestamp_tolerance(self) -> int:
        return getattr(settings, "PARTNER_WEBHOOK_TOLERANCE_SECONDS", 300)

    # --------------------------------------------------------
    # Creation and lookup
    # --------------------------------------------------------

    def create(
        self,
        name: str,
        partner_type: str = PartnerType.INDEPENDENT,
        contact: Optional[Dict[str, Any]] = None,
        status: str = PartnerStatus.ONBOARDING,
        **config,
    ) -> PartnerCreation:
        """
        Create a partner and its credentials.

        Returns:
            PartnerCreation holding the only copy of the plaintext API key
            and webhook secret

        Raises:
            ValidationError: missing name, unknown type/status or config key
        """
        if not name or not name.strip():
            raise ValidationError("Partner name is required", details={"field": "name"})
        if partner_type not in PartnerType.values:
            raise ValidationError(f"Unknown partner type: {partner_type}", details={"field": "partner_type"})
        if status not in PartnerStatus.values:
            raise ValidationError(f"Unknown partner status: {status}", details={"field": "status"})
        self._validate_config(config)

        api_key = generate_api_key()
        webhook_secret = generate_webhook_secret()

        with transaction.atomic():
            partner = self.partners.create(
                name=name.strip(),
                partner_type=partner_type,
                status=status,
                contact=contact or {},
                onboarded_at=timezone.now() if status == PartnerStatus.ACTIVE else None,
                **config,
            )
            self.credentials.create(
                partner=partner,
                api_key_hash=hash_api_key(api_key),
                webhook_secret=webhook_secret,
                last_rotated_at=timezone.now(),
            )

        logger.info(f"Created partner {partner.id} ({partner.name})")
        return PartnerCreation(partner=partner, api_key=api_key, webhook_secret=webhook_secret)

    def _validate_config(self, config: Dict[str, Any]) -> None:
        unknown = set(config) - (UPDATABLE_FIELDS - {"name", "partner_type", "contact"})
        if unknown:
            raise ValidationError(f"Unknown partner config: {sorted(unknown)}", details={"field": "config"})
        threshold = config.get("auto_approve_threshold")
        if threshold is not None and not 0 <= threshold <= 100:
            raise ValidationError("auto_approve_threshold must be 0-100", details={"field": "auto_approve_threshold"})
        entity_types = config.get("allowed_entity_types")
        if entity_types is not None:
            invalid = [t for t in entity_types if t not in EntityType.values]
            if invalid:
                raise ValidationError(f"Unknown entity types: {invalid}", details={"field": "allowed_entity_types"})
        if "markets" in config:
            config["markets"] = [m.upper() for m in config["markets"] or []]

    def get(self, partner_id) -> Optional[Partner]:
        return self.partners.get(partner_id)

    def get_or_raise(self, partner_id) -> Partner:
        return self.partners.get_or_raise(partner_id)

    def get_by_api_key(self, api_key: str, now: Optional[datetime] = None) -> Optional[Partner]:
        """
        Resolve a partner from a plaintext API key via its hash.

        The key replaced by the last rotation still resolves until the grace
        window ends.
        """
        if not api_key or not api_key.startswith(API_KEY_PREFIX):
            return None
        key_hash = hash_api_key(api_key)

        found = self.credentials.query({"api_key_hash": key_hash}, limit=1)
        if found:
            return found[0].partner

        now = now or timezone.now()
        found = self.credentials.query(
            {"previous_api_key_hash": key_hash, "previous_valid_until__gt": now},
            limit=1,
        )
        if found:
            logger.info(f"Partner {found[0].partner_id} authenticated with a rotated API key")
            return found[0].partner
        return None

    # --------------------------------------------------------
    # Webhook signatures
    # --------------------------------------------------------

    def verify_webhook_signature(
        self,
        partner_id,
        raw_body: Union[str, bytes],
        signature: str,
        timestamp: Union[str, int],
        now: Optional[float] = None,
    ) -> bool:
        """
        Verify a webhook request.

        The timestamp is checked first: a request more than the tolerance
        (5 minutes) away from now is rejected even when its signature is
        valid. The signature is compared in constant time against the
        current secret and, within the grace window, the previous one.

        Returns:
            True when the request is authentic

        Raises:
            StaleTimestampError: timestamp missing, malformed or outside the window
            SignatureError: signature missing or mismatched
            NotFoundError: partner has no credentials
        """
        try:
            ts = int(str(timestamp).strip())
        except (TypeError, ValueError):
            raise StaleTimestampError("Invalid webhook timestamp", details={"timestamp": str(timestamp)})

        now = time.time() if now is None else now
        if abs(now - ts) > self.timestamp_tolerance:
            raise StaleTimestampError(
                "Webhook timestamp is outside the replay window",
                details={"timestamp": ts, "tolerance_seconds": self.timestamp_tolerance},
            )

        if not signature:
            raise SignatureError("Missing webhook signature")
        provided = signature.strip()
        if provided.startswith("sha256="):
            provided = provided[len("sha256="):]

        credentials = self.credentials.get(partner_id)
        if credentials is None:
            raise NotFoundError("PartnerCredentials", partner_id)

        for secret in self._valid_secrets(credentials):
            expected = sign_payload(secret, timestamp, raw_body)
            if hmac.compare_digest(expected.encode("ascii"), provided.lower().encode("utf-8", "replace")):
                return True

        raise SignatureError("Webhook signature verification failed", details={"partner_id": str(partner_id)})

    def _valid_secrets(self, credentials: PartnerCredentials) -> List[str]:
        valid = [credentials.webhook_secret]
        if (
            credentials.previous_webhook_secret
            and credentials.previous_valid_until
            and credentials.previous_valid_until > timezone.now()
        ):
            valid.append(credentials.previous_webhook_secret)
        return valid

    def rotate_credentials(self, partner_id) -> CredentialRotation:
        """
        Issue a new API key and webhook secret.

        The old ones stay valid for the grace window.
        """
        api_key = generate_api_key()
        webhook_secret = generate_webhook_secret()
        now = timezone.now()
        valid_until = now + self.grace_period

        with transaction.atomic():
            credentials = self.credentials.lock(partner_id)
            self.credentials.update(
                credentials.pk,
                api_key_hash=hash_api_key(api_key),
                webhook_secret=webhook_secret,
                previous_api_key_hash=credentials.api_key_hash,
                previous_webhook_secret=credentials.webhook_secret,
                previous_valid_until=valid_until,
                last_rotated_at=now,
            )

        logger.info(f"Rotated credentials for partner {partner_id}, old ones valid until {valid_until}")
        return CredentialRotation(api_key=api_key, webhook_secret=webhook_secret, previous_valid_until=valid_until)

    # --------------------------------------------------------
    # Lifecycle and config
    # --------------------------------------------------------

    def update(self, partner_id, **fields) -> Partner:
        """
        Update partner profile and config fields.

        Raises:
            ValidationError: field not updatable or invalid config value
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields not updatable: {sorted(unknown)}", details={"field": "fields"})
        config = {k: v for k, v in fields.items() if k not in ("name", "partner_type", "contact")}
        self._validate_config(config)
        fields.update(config)
        if "partner_type" in fields and fields["partner_type"] not in PartnerType.values:
            raise ValidationError(f"Unknown partner type: {fields['partner_type']}", details={"field": "partner_type"})
        return self.partners.update(partner_id, **fields)

    def activate(self, partner_id) -> Partner:
        partner = self.partners.get_or_raise(partner_id)
        return self.partners.update(
            partner.pk,
            status=PartnerStatus.ACTIVE,
            suspended_reason="",
            onboarded_at=partner.onboarded_at or timezone.now(),
        )

    def suspend(self, partner_id, reason: str = "") -> Partner:
        partner = self.partners.update(partner_id, status=PartnerStatus.SUSPENDED, suspended_reason=reason or "")
        logger.warning(f"Suspended partner {partner_id}: {reason}")
        return partner

    def deactivate(self, partner_id) -> Partner:
        return self.partners.update(partner_id, status=PartnerStatus.INACTIVE)

    def list(
        self,
        status: Optional[str] = None,
        partner_type: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Partner]:
        filters = {}
        if status:
            filters["status"] = status
        if partner_type:
            filters["partner_type"] = partner_type
        return self.partners.query(filters, order_by=["-created_at"], limit=limit, offset=offset)

    def get_stats(self) -> Dict[str, Any]:
        """Partner counts by status and type plus the mean quality score."""
        partners = self.partners.query()
        by_status = Counter(p.status for p in partners)
        by_type = Counter(p.partner_type for p in partners)
        total_quality = sum(p.data_quality_score for p in partners)
        return {
            "total": len(partners),
            "by_status": {s: by_status.get(s, 0) for s in PartnerStatus.values},
            "by_type": {t: by_type.get(t, 0) for t in PartnerType.values},
            "average_quality_score": round_half_up(total_quality / len(partners)) if partners else 0,
        }

    @staticmethod
    def is_entity_type_allowed(partner: Partner, entity_type: str) -> bool:
        return entity_type in (partner.allowed_entity_types or [])

    @staticmethod
    def is_market_allowed(partner: Partner, market: Optional[str]) -> bool:
        """Partners without market restrictions may submit anywhere."""
        if not partner.markets or not market:
            return True
        return market.upper() in partner.markets

    def update_email_whitelist(self, partner_id, domains: Iterable[str]) -> PartnerCredentials:
        cleaned = sorted({d.strip().lower() for d in domains if d and d.strip()})
        return self.credentials.update(partner_id, email_whitelist=cleaned)

    def is_email_allowed(self, partner_id, email: str) -> bool:
        credentials = self.credentials.get(partner_id)
        if credentials is None or "@" not in (email or ""):
            return False
        domain = email.rsplit("@", 1)[1].lower()
        return domain in (credentials.email_whitelist or [])

    # --------------------------------------------------------
    # Quality metrics
    # --------------------------------------------------------

    def record_submission(
        self,
        partner_id,
        accepted: int,
        rejected: int,
        average_confidence: float,
    ) -> Partner:
        """
        Fold one submission into the partner's quality metrics.

        data_quality_score = acceptance_rate * 50 + rolling_average_confidence * 0.5,
        clamped to 0-100, where acceptance_rate is a 0-1 fraction over all
        submissions so far.

        Raises:
            ValidationError: negative counts or average_confidence outside 0-100
        """
        if accepted < 0 or rejected < 0:
            raise ValidationError("Submission counts cannot be negative", details={"field": "accepted"})
        if not 0 <= average_confidence <= 100:
            raise ValidationError("average_confidence must be 0-100", details={"field": "average_confidence"})

        with transaction.atomic():
            partner = self.partners.lock(partner_id)
            total_submissions = partner.total_submissions + 1
            total_accepted = partner.accepted_submissions + accepted
            total_rejected = partner.rejected_submissions + rejected

            rolling_confidence = (
                partner.average_confidence_score * partner.total_submissions + average_confidence
            ) / total_submissions
            acceptance_rate = total_accepted / max(total_accepted + total_rejected, 1)
            quality = clamp(round_half_up(acceptance_rate * 50 + rolling_confidence * 0.5))

            partner = self.partners.update(
                partner.pk,
                total_submissions=total_submissions,
                accepted_submissions=total_accepted,
                rejected_submissions=total_rejected,
                average_confidence_score=round_half_up(rolling_confidence, 1),
                data_quality_score=quality,
                last_submission_at=timezone.now(),
            )

        logger.debug(f"Partner {partner.id} quality now {partner.data_quality_score}")
        return partner
