"""
Partner API key authentication.

Partners send `Authorization: Bearer <api_key>`. The key is hashed and looked
up through PartnerAccounts; keys replaced by a rotation keep working during
the grace window.
"""

from rest_framework import authentication, exceptions, permissions

from ingestion.models import Partner, PartnerStatus
from ingestion.services import get_services


class PartnerAPIKeyAuthentication(authentication.BaseAuthentication):
    """Authenticates a Partner from a bearer API key."""

    keyword = "Bearer"

    def authenticate(self, request):
        header = authentication.get_authorization_header(request).decode("latin-1")
        if not header:
            return None
        parts = header.split()
        if len(parts) != 2 or parts[0] != self.keyword:
            raise exceptions.AuthenticationFailed("Invalid Authorization header")

        partner = get_services().partners.get_by_api_key(parts[1])
        if partner is None:
            raise exceptions.AuthenticationFailed("Invalid API key")
        return partner, parts[1]

    def authenticate_header(self, request):
        return self.keyword


class IsActivePartner(permissions.BasePermission):
    """Only active partners may submit data."""

    message = "Partner account is not active"

    def has_permission(self, request, view):
        partner = request.user
        return isinstance(partner, Partner) and partner.status == PartnerStatus.ACTIVE
