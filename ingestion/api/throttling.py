"""
API throttling classes.

Partner limits come from the partner record (requests_per_hour,
requests_per_day); staff bulk actions use a fixed rate.
"""

from rest_framework.throttling import SimpleRateThrottle, UserRateThrottle

from ingestion.models import Partner


class PartnerRateThrottle(SimpleRateThrottle):
    """
    Base throttle keyed by the authenticated partner.

    Subclasses name the partner field holding the limit and the period.
    """

    limit_field = "requests_per_hour"
    period = "hour"
    scope = "partner"

    def get_rate(self):
        # Replaced per request in allow_request
        return f"1000/{self.period}"

    def allow_request(self, request, view):
        partner = request.user
        if not isinstance(partner, Partner):
            return True
        self.rate = f"{getattr(partner, self.limit_field)}/{self.period}"
        self.num_requests, self.duration = self.parse_rate(self.rate)
        return super().allow_request(request, view)

    def get_cache_key(self, request, view):
        return self.cache_format % {
            "scope": f"{self.scope}_{self.period}",
            "ident": request.user.pk,
        }


class PartnerHourlyThrottle(PartnerRateThrottle):
    limit_field = "requests_per_hour"
    period = "hour"


class PartnerDailyThrottle(PartnerRateThrottle):
    limit_field = "requests_per_day"
    period = "day"


class BulkReviewThrottle(UserRateThrottle):
    """
    Throttle for bulk review endpoints.

    Rate: 60 requests per hour per user.
    """

    rate = "60/hour"
    scope = "bulk_review"


class DiscoveryTriggerThrottle(UserRateThrottle):
    """
    Throttle for starting discovery runs.

    Rate: 10 requests per hour per user.
    """

    rate = "10/hour"
    scope = "discovery_trigger"
