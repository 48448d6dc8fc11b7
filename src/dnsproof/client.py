"""ACME directory client driving the authorization protocol."""

import json
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel

from dnsproof._logging import Timer, get_domain_extra, get_logger
from dnsproof.crypto import sign_jws
from dnsproof.exceptions import (
    AccountError,
    AcmeProblemError,
    AuthorizationError,
    CancelledError,
    ChallengeFailedError,
    ChallengeTimeoutError,
    ProtocolError,
    parse_retry_after,
)
from dnsproof.models import (
    Account,
    AccountStatus,
    Authorization,
    Challenge,
    ChallengeStatus,
    Directory,
    Identifier,
)
from dnsproof.store import Store

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass(frozen=True)
class _PollWindow:
    """Deadline and cancel signal of an ongoing challenge wait."""

    start: float
    deadline: float
    cancel: threading.Event | None = None


class ClientState(StrEnum):
    """Protocol progress of one authorization run."""

    UNINITIALIZED = "uninitialized"
    READY = "ready"
    AUTHORIZATION_REQUESTED = "authorization_requested"
    CHALLENGE_SUBMITTED = "challenge_submitted"
    POLLING = "polling"
    FINALIZED = "finalized"


class DirectoryClient:
    """Sequential ACME (RFC 8555) driver for pre-authorizing one identifier.

    Every request after the directory fetch is a JWS-signed POST using the
    store's account key. Transport failures are retried with exponential
    backoff; problem documents returned by the authority are not retried,
    except ``badNonce``.

    Args:
        directory_url: URL of the ACME directory endpoint.
        store: Store holding the account key.
        http: httpx client to use (one is created if omitted).
        ca_cert: Path to CA certificate file, False to disable verification,
                 or None/True for default verification. Ignored with ``http``.
        poll_interval: Seconds between challenge polls.
        max_wait: Default polling deadline in seconds.
        max_transport_retries: Attempts per request on transport errors.
        backoff: Initial backoff in seconds, doubled per retry.
        clock: Monotonic clock (injectable for tests).
        sleep: Sleep function (injectable for tests).
    """

    BAD_NONCE_RETRIES = 3

    def __init__(
        self,
        directory_url: str,
        store: Store,
        http: httpx.Client | None = None,
        ca_cert: str | bool | None = None,
        poll_interval: float = 2.0,
        max_wait: float = 120.0,
        max_transport_retries: int = 3,
        backoff: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.directory_url = directory_url
        self.store = store
        self.poll_interval = poll_interval
        self.max_wait = max_wait
        self.max_transport_retries = max(1, max_transport_retries)
        self.backoff = backoff
        self._clock = clock
        self._sleep = sleep

        self._owns_http = http is None
        if http is None:
            verify = True if ca_cert is None else ca_cert
            http = httpx.Client(verify=verify, timeout=30.0)
        self._http = http

        self._directory: Directory | None = None
        self._nonce: str | None = None
        self._account_url: str | None = None
        self.state = ClientState.UNINITIALIZED

    def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_http:
            self._http.close()

    def __enter__(self) -> "DirectoryClient":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _retry_wait(
        self, attempt: int, url: str, error: Exception, window: _PollWindow | None = None
    ) -> None:
        """Back off before the next attempt, never past a polling deadline."""
        delay = self.backoff * 2 ** (attempt - 1)
        if window is not None:
            now = self._clock()
            remaining = window.deadline - now
            if remaining <= 0:
                raise ChallengeTimeoutError(url, now - window.start) from error
            delay = min(delay, remaining)
        logger.warning(
            "Transport error, retrying",
            extra={"url": url, "attempt": attempt, "delay": delay, "error": str(error)},
        )
        if window is None:
            self._sleep(delay)
        else:
            self._pause(delay, window.cancel)

    def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Unsigned request with transport-level retries."""
        for attempt in range(1, self.max_transport_retries + 1):
            try:
                return self._http.request(method, url, **kwargs)
            except httpx.TransportError as e:
                if attempt == self.max_transport_retries:
                    raise ProtocolError(f"{method} {url} failed: {e}") from e
                self._retry_wait(attempt, url, e)
            except httpx.RequestError as e:
                raise ProtocolError(f"{method} {url} failed: {e}") from e
        raise AssertionError("unreachable")

    @staticmethod
    def _parse(model: type[ModelT], response: httpx.Response) -> ModelT:
        """Validate a response body, mapping bad JSON to ProtocolError."""
        try:
            return model.model_validate(response.json())
        except ValueError as e:
            raise ProtocolError(
                f"unexpected {model.__name__} response from {response.request.url}: {e}",
                status_code=response.status_code,
            ) from e

    @staticmethod
    def _problem(
        response: httpx.Response, error_cls: type[AcmeProblemError]
    ) -> AcmeProblemError:
        """Build the error for a failed response.

        Server errors and unparseable bodies are protocol failures; 4xx
        problem documents are attributed to ``error_cls``.
        """
        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            return ProtocolError(
                detail=response.text or f"HTTP {response.status_code}",
                status_code=response.status_code,
            )
        cls = error_cls
        if response.status_code >= 500 or data.get("type") == "urn:ietf:params:acme:error:badNonce":
            cls = ProtocolError
        return cls.from_problem(data, response.status_code, headers=dict(response.headers))

    @property
    def directory(self) -> Directory:
        """Get the ACME directory (cached after first fetch)."""
        if self._directory is None:
            response = self._send("GET", self.directory_url)
            if response.status_code != 200:
                raise self._problem(response, ProtocolError)
            self._directory = self._parse(Directory, response)
        return self._directory

    @property
    def account_url(self) -> str | None:
        """Get the account URL (set after :meth:`init`)."""
        return self._account_url

    def _get_nonce(self) -> str:
        """Use the cached nonce, or fetch a fresh one from newNonce."""
        if self._nonce:
            nonce, self._nonce = self._nonce, None
            return nonce

        response = self._send("HEAD", self.directory.new_nonce)
        nonce = response.headers.get("Replay-Nonce")
        if response.status_code >= 400 or not nonce:
            raise ProtocolError(
                f"no nonce from {self.directory.new_nonce}", status_code=response.status_code
            )
        return nonce

    def _signed_request(
        self,
        url: str,
        payload: dict[str, Any] | str,
        error_cls: type[AcmeProblemError] = ProtocolError,
        use_kid: bool = True,
        window: _PollWindow | None = None,
    ) -> httpx.Response:
        """Make a JWS-signed POST request to the ACME server.

        The request is re-signed with a fresh nonce for each retry.

        Args:
            url: The endpoint URL.
            payload: The request payload (dict for JSON, "" for POST-as-GET).
            error_cls: Error raised for 4xx problem documents.
            use_kid: Sign with the account URL (kid) instead of the JWK.
            window: Polling deadline and cancel event bounding transport backoff.

        Raises:
            ProtocolError: On transport failure or unexpected responses.
            AcmeProblemError: ``error_cls`` for problems returned by the server.
            ChallengeTimeoutError: ``window`` expired while backing off.
            CancelledError: ``window.cancel`` was set while backing off.
        """
        transport_attempts = 0
        bad_nonce_retries = 0
        while True:
            body = sign_jws(
                key=self.store.account_key,
                payload=payload,
                url=url,
                nonce=self._get_nonce(),
                kid=self._account_url if use_kid else None,
            )
            try:
                response = self._http.post(
                    url,
                    content=json.dumps(body).encode("utf-8"),
                    headers={"Content-Type": "application/jose+json"},
                )
            except httpx.TransportError as e:
                transport_attempts += 1
                if transport_attempts >= self.max_transport_retries:
                    raise ProtocolError(f"POST {url} failed: {e}") from e
                self._retry_wait(transport_attempts, url, e, window)
                continue
            except httpx.RequestError as e:
                raise ProtocolError(f"POST {url} failed: {e}") from e

            if "Replay-Nonce" in response.headers:
                self._nonce = response.headers["Replay-Nonce"]

            if response.status_code < 400:
                return response

            error = self._problem(response, error_cls)
            # Servers may reject a good nonce; a fresh one is worth a retry
            if error.is_bad_nonce and bad_nonce_retries < self.BAD_NONCE_RETRIES:
                bad_nonce_retries += 1
                logger.debug("Bad nonce, retrying", extra={"url": url})
                continue
            raise error

    def _require(self, *states: ClientState) -> None:
        if self.state not in states:
            allowed = ", ".join(str(s) for s in states)
            raise ProtocolError(f"client is {self.state}, expected one of: {allowed}")

    # ------------------------------------------------------------------
    # Protocol operations
    # ------------------------------------------------------------------

    def init(self) -> Account:
        """Fetch the directory and register (or find) the account.

        Returns:
            The Account resource.

        Raises:
            ProtocolError: Network failure or unexpected server response.
            AccountError: The authority rejected the registration.
        """
        self._require(ClientState.UNINITIALIZED)
        with Timer() as t:
            new_account = self.directory.new_account
            response = self._signed_request(
                new_account,
                {"termsOfServiceAgreed": True, "contact": [f"mailto:{self.store.email}"]},
                error_cls=AccountError,
                use_kid=False,
            )
        account_url = response.headers.get("Location") or self.store.account_url
        if not account_url:
            raise ProtocolError("account response has no Location header")

        account = self._parse(Account, response)
        if account.status != AccountStatus.VALID:
            raise AccountError(
                detail=f"account {account_url} is {account.status}",
                type="urn:ietf:params:acme:error:unauthorized",
                status_code=response.status_code,
            )

        self.store.save_account_url(account_url)
        self._account_url = account_url
        self.state = ClientState.READY
        logger.info(
            "Account ready",
            extra={
                "account_url": account_url,
                "new_account": response.status_code == 201,
                "elapsed_ms": t.elapsed_ms,
                **get_domain_extra(),
            },
        )
        return account

    def new_authorization(self, identifier: Identifier | str) -> Authorization:
        """Request a pre-authorization (RFC 8555 Section 7.4.1) for an identifier.

        Returns:
            The pending Authorization with its ``url`` and offered challenges.

        Raises:
            ProtocolError: Transport/parsing failure, or no ``newAuthz`` support.
            AuthorizationError: The authority rejected the identifier.
        """
        self._require(ClientState.READY)
        if isinstance(identifier, str):
            identifier = Identifier(value=identifier)

        new_authz = self.directory.new_authz
        if not new_authz:
            raise ProtocolError(
                f"authority at {self.directory_url} does not support pre-authorization"
            )

        response = self._signed_request(
            new_authz,
            {"identifier": identifier.model_dump(mode="json")},
            error_cls=AuthorizationError,
        )
        url = response.headers.get("Location")
        if not url:
            raise ProtocolError("authorization response has no Location header")

        authorization = self._parse(Authorization, response).model_copy(update={"url": url})
        self.state = ClientState.AUTHORIZATION_REQUESTED
        logger.info(
            "Authorization requested",
            extra={
                "url": url,
                "status": str(authorization.status),
                "challenges": [c.type for c in authorization.challenges],
                **get_domain_extra(),
            },
        )
        return authorization

    def solve_challenge(self, challenge: Challenge, key_authorization: str) -> Challenge:
        """Tell the authority the challenge is ready for validation.

        The authority starts validating as soon as this returns, so the
        side effect must already be in place. Resubmitting is harmless.

        Returns:
            The Challenge as reported by the authority.

        Raises:
            ProtocolError: On transport failure, rejection, or when the key
                authorization was not built for this challenge's token.
        """
        self._require(ClientState.AUTHORIZATION_REQUESTED, ClientState.CHALLENGE_SUBMITTED)
        if not challenge.token or not key_authorization.startswith(f"{challenge.token}."):
            raise ProtocolError(f"key authorization does not belong to challenge {challenge.url}")

        # RFC 8555 Section 7.5.1: the request payload is an empty object
        response = self._signed_request(challenge.url, {})
        submitted = self._parse(Challenge, response)
        self.state = ClientState.CHALLENGE_SUBMITTED
        logger.info(
            "Challenge submitted",
            extra={"url": challenge.url, "status": str(submitted.status), **get_domain_extra()},
        )
        return submitted

    def _pause(self, delay: float, cancel: threading.Event | None) -> None:
        if cancel is None:
            self._sleep(delay)
        elif cancel.wait(delay):
            raise CancelledError("cancelled while waiting for challenge validation")

    def wait_challenge_done(
        self,
        challenge: Challenge,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> Challenge:
        """Poll the challenge until the authority reaches a terminal status.

        Args:
            challenge: The submitted challenge.
            timeout: Deadline in seconds (defaults to ``max_wait``).
            cancel: Event that aborts the wait as soon as it is set.

        Returns:
            The ``valid`` Challenge.

        Raises:
            ChallengeFailedError: The challenge became ``invalid``.
            ChallengeTimeoutError: The deadline elapsed first.
            CancelledError: ``cancel`` was set.
            ProtocolError: Transport failure after retries.
        """
        self._require(ClientState.CHALLENGE_SUBMITTED, ClientState.POLLING)
        self.state = ClientState.POLLING

        timeout = self.max_wait if timeout is None else timeout
        start = self._clock()
        deadline = start + timeout
        window = _PollWindow(start, deadline, cancel)
        polls = 0

        while True:
            if cancel is not None and cancel.is_set():
                raise CancelledError("cancelled while waiting for challenge validation")

            response = self._signed_request(challenge.url, "", window=window)
            current = self._parse(Challenge, response)
            polls += 1

            if current.status == ChallengeStatus.VALID:
                logger.info(
                    "Challenge valid",
                    extra={
                        "url": challenge.url,
                        "polls": polls,
                        "elapsed_s": round(self._clock() - start, 3),
                        **get_domain_extra(),
                    },
                )
                return current

            if current.status == ChallengeStatus.INVALID:
                problem = current.error
                logger.info(
                    "Challenge invalid",
                    extra={"url": challenge.url, "polls": polls, **get_domain_extra()},
                )
                if problem is None:
                    raise ChallengeFailedError(detail=f"challenge {challenge.url} is invalid")
                raise ChallengeFailedError(
                    detail=problem.detail or f"challenge {challenge.url} is invalid",
                    type=problem.type,
                    status_code=problem.status,
                    subproblems=problem.subproblems,
                )

            now = self._clock()
            remaining = deadline - now
            if remaining <= 0:
                raise ChallengeTimeoutError(challenge.url, now - start, str(current.status))

            delay = self.poll_interval
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            if retry_after is not None:
                delay = max(delay, retry_after)
            logger.debug(
                "Challenge not done yet",
                extra={"url": challenge.url, "status": str(current.status), "delay": delay},
            )
            self._pause(min(delay, remaining), cancel)

    def get_authorization(self, url: str) -> Authorization:
        """Fetch the current state of an authorization.

        Raises:
            ProtocolError: On any failure.
        """
        if self.state == ClientState.UNINITIALIZED:
            raise ProtocolError("client is uninitialized")
        response = self._signed_request(url, "")
        authorization = self._parse(Authorization, response).model_copy(update={"url": url})
        self.state = ClientState.FINALIZED
        logger.info(
            "Authorization fetched",
            extra={"url": url, "status": str(authorization.status), **get_domain_extra()},
        )
        return authorization
