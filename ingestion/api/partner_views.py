"""
Partner webhook endpoint.

POST /api/v1/partners/webhook/
Headers:
    Authorization: Bearer <api_key>
    X-Timestamp: unix seconds
    X-Signature: hex HMAC-SHA256 of "<timestamp>." + raw body
    X-Idempotency-Key: optional, also accepted as "idempotency_key" in the body
"""

import json
import logging

from drf_spectacular.utils import OpenApiParameter, extend_schema
from rest_framework import status
from rest_framework.decorators import (
    api_view,
    authentication_classes,
    permission_classes,
    throttle_classes,
)
from rest_framework.response import Response

from ingestion.api.authentication import IsActivePartner, PartnerAPIKeyAuthentication
from ingestion.api.throttling import PartnerDailyThrottle, PartnerHourlyThrottle
from ingestion.exceptions import ValidationError
from ingestion.services import get_services

logger = logging.getLogger(__name__)


@extend_schema(
    tags=["Partners"],
    summary="Submit partner data",
    parameters=[
        OpenApiParameter("X-Timestamp", str, OpenApiParameter.HEADER, required=True),
        OpenApiParameter("X-Signature", str, OpenApiParameter.HEADER, required=True),
        OpenApiParameter("X-Idempotency-Key", str, OpenApiParameter.HEADER),
    ],
)
@api_view(["POST"])
@authentication_classes([PartnerAPIKeyAuthentication])
@permission_classes([IsActivePartner])
@throttle_classes([PartnerHourlyThrottle, PartnerDailyThrottle])
def partner_webhook(request):
    """
    Receive a signed partner submission.

    Request body:
    {
        "type": "menu_update",
        "idempotency_key": "2026-10-19-001",
        "venues": [{"external_id": "v1", "name": "...", "country": "DE", ...}],
        "dishes": [{"venue_external_id": "v1", "name": "...", ...}],
        "promotions": [],
        "availability": []
    }

    Response (201, or 200 for a replayed idempotency key):
    {
        "success": true,
        "batch_id": "...",
        "idempotent": false,
        "summary": {"received": 2, "accepted": 2, "rejected": 0, "errors": 0},
        "items": [...]
    }
    """
    services = get_services()
    partner = request.user

    # The signature covers the exact bytes received
    raw_body = request.body
    services.partners.verify_webhook_signature(
        partner.id,
        raw_body,
        request.headers.get("X-Signature", ""),
        request.headers.get("X-Timestamp", ""),
    )

    try:
        body = json.loads(raw_body or b"{}")
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValidationError(f"Invalid JSON: {e}", details={"field": "body"})

    result = services.webhooks.process(
        partner,
        body,
        idempotency_key=request.headers.get("X-Idempotency-Key"),
    )

    if result.idempotent:
        return Response(result.to_dict(), status=status.HTTP_200_OK)
    return Response(result.to_dict(), status=status.HTTP_201_CREATED)
