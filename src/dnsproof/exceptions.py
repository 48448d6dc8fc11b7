"""Exception taxonomy for domain authorization runs."""

import builtins
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any


class DnsproofError(Exception):
    """Base exception for every failure raised by dnsproof.

    ``stage`` is filled in by the orchestrator with the name of the step
    that failed (e.g. ``"new_authorization"``).
    """

    stage: str | None = None


class StoreError(DnsproofError):
    """Persistence backend unavailable, or a stored record is corrupt."""


class NotFoundError(StoreError):
    """A filer key does not exist."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"key not found: {key}")


class KeyMaterialError(DnsproofError, ValueError):
    """Key material is malformed or of an unsupported type."""


class SolverError(DnsproofError):
    """Creating or removing a challenge side effect failed."""


class UnsupportedChallengeError(DnsproofError):
    """The requested challenge type is not offered or has no solver."""

    def __init__(self, challenge_type: str, offered: list[str] | None = None):
        self.challenge_type = challenge_type
        self.offered = offered or []
        if offered is None:
            message = f"challenge {challenge_type} is not supported"
        else:
            message = (
                f"no {challenge_type} challenge offered "
                f"(offered: {', '.join(self.offered) or 'none'})"
            )
        super().__init__(message)


class CancelledError(DnsproofError):
    """The caller cancelled the run while it was waiting."""


class ChallengeTimeoutError(DnsproofError, builtins.TimeoutError):
    """The challenge did not reach a terminal status before the deadline."""

    def __init__(self, url: str, waited: float, last_status: str | None = None):
        self.url = url
        self.waited = waited
        self.last_status = last_status
        super().__init__(
            f"challenge {url} still {last_status or 'unknown'} after {waited:.2f}s"
        )


class AcmeProblemError(DnsproofError):
    """Error carrying an ACME problem document (RFC 7807 / RFC 8555 §6.7).

    Subclasses say which stage of the protocol produced it.
    """

    def __init__(
        self,
        detail: str,
        type: str = "about:blank",
        status_code: int | None = None,
        subproblems: list[dict[str, Any]] | None = None,
        retry_after: int | None = None,
    ):
        self.type = type
        self.detail = detail
        self.status_code = status_code
        self.subproblems = subproblems
        self.retry_after = retry_after
        if type == "about:blank":
            super().__init__(detail)
        else:
            super().__init__(f"{type}: {detail}")

    @classmethod
    def from_problem(
        cls,
        data: dict[str, Any],
        status_code: int | None = None,
        headers: dict[str, str] | None = None,
    ) -> "AcmeProblemError":
        """Create an error from a parsed problem document.

        Args:
            data: Parsed JSON problem document.
            status_code: HTTP status code, if the problem came from a response.
            headers: Response headers (for Retry-After extraction).
        """
        retry_after = parse_retry_after(headers.get("Retry-After")) if headers else None
        return cls(
            detail=data.get("detail", "Unknown error"),
            type=data.get("type", "about:blank"),
            status_code=status_code if status_code is not None else data.get("status"),
            subproblems=data.get("subproblems"),
            retry_after=retry_after,
        )

    @property
    def is_bad_nonce(self) -> bool:
        return self.type == "urn:ietf:params:acme:error:badNonce"


class ProtocolError(AcmeProblemError):
    """Transport, parsing or unexpected-response failure talking to the authority."""


class AccountError(AcmeProblemError):
    """The authority rejected account registration."""


class AuthorizationError(AcmeProblemError):
    """The authority rejected the identifier (malformed, rate limited, policy)."""


class ChallengeFailedError(AcmeProblemError):
    """The authority marked the challenge ``invalid``."""


def parse_retry_after(value: str | None) -> int | None:
    """Parse a Retry-After header (seconds or HTTP-date).

    Returns:
        Seconds to wait, or None if not parseable.
    """
    if not value:
        return None
    try:
        return max(0, int(value))
    except ValueError:
        pass
    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return max(0, int((dt - datetime.now(timezone.utc)).total_seconds()))
