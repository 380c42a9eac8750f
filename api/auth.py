"""Caller identity and admin access for the HTTP API"""

import logging
import secrets
from typing import Dict, Optional, Tuple

from fastapi import HTTPException

from core.admission import Identity
from core.models import Tier

logger = logging.getLogger(__name__)


class IdentityResolver:
    """
    Maps request credentials to the caller's Identity.

    API keys (``Authorization: Bearer`` or ``X-API-Key``) are looked up in a
    configured table of ``key -> account_id:tier``. Raw ``X-Account-Id`` and
    ``X-Tier`` headers are only honoured when ``trust_headers`` is set, which
    is the default outside production. Everything else is anonymous.
    """

    def __init__(self, api_keys: Optional[Dict[str, str]] = None, trust_headers: bool = False):
        self.api_keys: Dict[str, Tuple[str, Tier]] = {}
        for key, entry in (api_keys or {}).items():
            account, _, tier = entry.partition(":")
            self.api_keys[key] = (account, Tier(tier.lower()))
        self.trust_headers = trust_headers

    @classmethod
    def from_settings(cls, settings) -> "IdentityResolver":
        return cls(settings.api_keys, trust_headers=settings.identity_headers_trusted())

    def resolve(
        self,
        api_key: Optional[str] = None,
        account_id: Optional[str] = None,
        tier: Optional[str] = None,
    ) -> Identity:
        """
        Identity for one request.

        Raises:
            HTTPException: 401 for an unknown API key, 400 for an unknown tier
                in trusted headers
        """
        if api_key:
            for known, (account, tier_value) in self.api_keys.items():
                if secrets.compare_digest(known.encode(), api_key.encode()):
                    return Identity(key=account, tier=tier_value)
            raise HTTPException(
                status_code=401,
                detail="Invalid API key",
                headers={"WWW-Authenticate": "Bearer"},
            )

        if not self.trust_headers:
            if account_id or tier:
                logger.debug("Ignoring untrusted identity headers")
            return Identity(key=None, tier=Tier.FREE)

        if not account_id:
            return Identity(key=None, tier=Tier.FREE)
        try:
            return Identity(key=account_id, tier=Tier((tier or "free").lower()))
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown tier: {tier}")


def check_admin_token(configured: Optional[str], supplied: Optional[str]) -> None:
    """
    Gate for admin routes.

    Raises:
        HTTPException: 403 when no admin token is configured, 401 when the
            supplied token is missing or wrong
    """
    if not configured:
        raise HTTPException(status_code=403, detail="Admin API is disabled")
    if not supplied or not secrets.compare_digest(configured.encode(), supplied.encode()):
        raise HTTPException(status_code=401, detail="Invalid admin token")
