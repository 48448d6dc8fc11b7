"""Pydantic models for ACME resources and persisted state."""

import re
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator

# =============================================================================
# ACME Protocol Enums (RFC 8555)
# =============================================================================


class ChallengeStatus(StrEnum):
    """Challenge statuses (RFC 8555 Section 7.1.6)."""

    PENDING = "pending"
    PROCESSING = "processing"
    VALID = "valid"
    INVALID = "invalid"


class AuthorizationStatus(StrEnum):
    """Authorization statuses (RFC 8555 Section 7.1.6)."""

    PENDING = "pending"
    VALID = "valid"
    INVALID = "invalid"
    DEACTIVATED = "deactivated"
    EXPIRED = "expired"
    REVOKED = "revoked"


class AccountStatus(StrEnum):
    """Account statuses (RFC 8555 Section 7.1.6)."""

    VALID = "valid"
    DEACTIVATED = "deactivated"
    REVOKED = "revoked"


class ChallengeType(StrEnum):
    """Challenge types (RFC 8555 Section 8)."""

    HTTP_01 = "http-01"
    DNS_01 = "dns-01"
    TLS_ALPN_01 = "tls-alpn-01"


class IdentifierType(StrEnum):
    """Identifier types (RFC 8555 Section 9.7.7)."""

    DNS = "dns"


_LABEL = re.compile(r"^(?!-)[a-z0-9-]{1,63}(?<!-)$")


def normalize_domain(value: str) -> str:
    """Lowercase a DNS name, strip a trailing dot and check its syntax.

    A single leading ``*.`` wildcard label is allowed.

    Raises:
        ValueError: If the name is not a valid DNS name.
    """
    name = value.strip().lower().rstrip(".")
    bare = name[2:] if name.startswith("*.") else name
    labels = bare.split(".")
    if len(name) > 253 or len(labels) < 2:
        raise ValueError(f"invalid domain name: {value!r}")
    for label in labels:
        if not _LABEL.match(label):
            raise ValueError(f"invalid domain name: {value!r}")
    return name


# =============================================================================
# Pydantic Models
# =============================================================================


class Directory(BaseModel):
    """ACME directory resource (RFC 8555 Section 7.1.1)."""

    new_nonce: str = Field(alias="newNonce")
    new_account: str = Field(alias="newAccount")
    new_authz: str | None = Field(default=None, alias="newAuthz")
    new_order: str | None = Field(default=None, alias="newOrder")
    revoke_cert: str | None = Field(default=None, alias="revokeCert")
    key_change: str | None = Field(default=None, alias="keyChange")
    meta: dict[str, Any] | None = None

    model_config = {"populate_by_name": True}


class Account(BaseModel):
    """ACME account resource (RFC 8555 Section 7.1.2)."""

    status: AccountStatus
    contact: list[str] | None = None
    orders: str | None = None
    terms_of_service_agreed: bool | None = Field(default=None, alias="termsOfServiceAgreed")

    model_config = {"populate_by_name": True}


class Identifier(BaseModel):
    """ACME identifier (RFC 8555 Section 7.1.3)."""

    type: IdentifierType = IdentifierType.DNS
    value: str

    @field_validator("value")
    @classmethod
    def _check_value(cls, value: str) -> str:
        return normalize_domain(value)


class Problem(BaseModel):
    """Problem document (RFC 7807, RFC 8555 Section 6.7)."""

    type: str = "about:blank"
    detail: str | None = None
    status: int | None = None
    subproblems: list[dict[str, Any]] | None = None


class Challenge(BaseModel):
    """ACME challenge resource (RFC 8555 Section 7.5.1).

    ``type`` stays a plain string: authorities may offer kinds this
    package has never heard of.
    """

    type: str
    url: str
    status: ChallengeStatus
    token: str | None = None
    validated: datetime | None = None
    error: Problem | None = None


class Authorization(BaseModel):
    """ACME authorization resource (RFC 8555 Section 7.1.4).

    ``url`` is not part of the server's JSON; the client fills it in from
    the request URL or the Location header.
    """

    url: str | None = None
    status: AuthorizationStatus
    identifier: Identifier
    challenges: list[Challenge] = Field(default_factory=list)
    expires: datetime | None = None
    wildcard: bool | None = None

    def find_challenge(self, challenge_type: str) -> Challenge | None:
        """Return the offered challenge of the given type, if any."""
        for challenge in self.challenges:
            if challenge.type == challenge_type:
                return challenge
        return None


class StoredAccount(BaseModel):
    """Account record persisted by the store."""

    email: str
    private_key_pem: str
    account_url: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
