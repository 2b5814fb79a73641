"""Principals and the identity-resolver collaborator.

Token parsing lives in the auth service. This module only asks it who a
bearer credential belongs to.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx

from .enums import Role
from .errors import Unauthenticated, UpstreamUnavailable
from .ids import first_present, normalize_id

logger = logging.getLogger("order-service.identity")


@dataclass(frozen=True)
class Principal:
    id: str
    role: str
    restaurant_id: Optional[str] = None

    def has_role(self, *roles: Role) -> bool:
        return self.role in {r.value for r in roles}

    def with_restaurant(self, *fallbacks) -> "Principal":
        """Resolve the restaurant affiliation of a restaurant admin.

        The credential's own value wins, then each fallback in order (query
        parameter, then header); the first non-empty value is used.
        """
        if not self.has_role(Role.RESTAURANT_ADMIN):
            return self
        restaurant_id = first_present(self.restaurant_id, *fallbacks)
        return Principal(id=self.id, role=self.role, restaurant_id=restaurant_id)


def principal_from_claims(claims: dict) -> Principal:
    principal_id = first_present(claims.get("id"), claims.get("userId"), claims.get("_id"))
    role = normalize_id(claims.get("role"))
    if principal_id is None or role is None:
        raise Unauthenticated("Credential does not identify a principal")
    return Principal(
        id=principal_id,
        role=role,
        restaurant_id=first_present(claims.get("restaurantId"), claims.get("restaurant_id")),
    )


class IdentityResolver(ABC):
    @abstractmethod
    def resolve(self, credential: Optional[str]) -> Principal:
        """Return the principal behind a bearer credential or raise Unauthenticated."""


class HttpIdentityResolver(IdentityResolver):
    """Verifies credentials against the auth service.

    Revocation is owned by the auth service, so nothing is cached here: every
    request sees the revocation state that every other instance sees.
    """

    def __init__(self, base_url: str, timeout: float = 5.0, transport=None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def resolve(self, credential: Optional[str]) -> Principal:
        if not credential:
            raise Unauthenticated("No authentication token provided")
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                r = client.get(
                    f"{self.base_url}/api/auth/verify",
                    headers={"Authorization": f"Bearer {credential}"},
                )
        except httpx.HTTPError as e:
            logger.error(f"Auth service unreachable: {e}")
            raise UpstreamUnavailable("Auth service unavailable")

        if r.status_code in (401, 403):
            raise Unauthenticated("Invalid token")
        if r.status_code != 200:
            raise UpstreamUnavailable("Auth service error", upstream_status=r.status_code)

        data = r.json()
        return principal_from_claims(data.get("user", data))
