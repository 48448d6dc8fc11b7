"""Pytest fixtures for the dnsproof test suite."""

import base64
import itertools
import json
import logging
import logging.handlers
from collections.abc import Generator
from typing import Any

import httpx
import pytest
import respx

from dnsproof.exceptions import NotFoundError, StoreError
from dnsproof.filer import Filer
from dnsproof.providers.base import DnsProvider

ACME_BASE = "https://acme.test"
DIRECTORY_URL = f"{ACME_BASE}/directory"
ACCOUNT_URL = f"{ACME_BASE}/acct/1"
AUTHZ_URL = f"{ACME_BASE}/authz/1"


def b64decode(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


class MemoryFiler(Filer):
    """In-memory filer; ``fail_get``/``fail_put`` simulate backend outages."""

    def __init__(self) -> None:
        self.blobs: dict[str, bytes] = {}
        self.fail_get = False
        self.fail_put = False
        self.puts: list[str] = []

    def get(self, key: str) -> bytes:
        if self.fail_get:
            raise StoreError("backend unavailable")
        try:
            return self.blobs[key]
        except KeyError:
            raise NotFoundError(key) from None

    def put(self, key: str, data: bytes) -> None:
        if self.fail_put:
            raise StoreError("backend unavailable")
        self.blobs[key] = data
        self.puts.append(key)


class RecordingDnsProvider(DnsProvider):
    """DNS provider that records calls instead of changing DNS."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, str]] = []
        self.records: dict[str, str] = {}
        self.fail_upsert: Exception | None = None
        self.fail_delete: Exception | None = None

    def upsert_txt(self, name: str, value: str) -> None:
        self.calls.append(("upsert", name, value))
        if self.fail_upsert:
            raise self.fail_upsert
        self.records[name] = value

    def delete_txt(self, name: str, value: str) -> None:
        self.calls.append(("delete", name, value))
        if self.fail_delete:
            raise self.fail_delete
        self.records.pop(name, None)


class FakeClock:
    """Monotonic clock advanced only by its own sleep()."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeAcmeServer:
    """Minimal RFC 8555 authority with pre-authorization, served through respx.

    Attributes tweak its behaviour per test:
        offered: (type, token) pairs offered in the authorization.
        account_problem / authz_problem: (status, problem) returned instead
            of creating the account / authorization.
        poll_statuses: challenge status returned by successive polls after
            submission; the last one repeats.
        challenge_error: problem attached to an ``invalid`` challenge.
        transport_failures: path -> number of requests that fail with a
            connection error before the route answers.
        transport_error: httpx.RequestError subclass raised for those failures.
        poll_retry_after: Retry-After header sent with challenge polls.
    """

    def __init__(self, router: respx.Router) -> None:
        self.offered: list[tuple[str, str]] = [("dns-01", "abc123")]
        self.account_status = "valid"
        self.account_problem: tuple[int, dict[str, Any]] | None = None
        self.authz_problem: tuple[int, dict[str, Any]] | None = None
        self.poll_statuses: list[str] = ["valid"]
        self.challenge_error: dict[str, Any] | None = None
        self.support_new_authz = True
        self.bad_nonces = 0
        self.identifier: dict[str, str] | None = None
        self.transport_failures: dict[str, int] = {}
        self.transport_error: type[httpx.RequestError] = httpx.ConnectError
        self.poll_retry_after: str | None = None

        self.account_requests: list[dict[str, Any]] = []
        self.authz_requests: list[dict[str, Any]] = []
        self.submissions: list[tuple[str, Any]] = []
        self.polls = 0
        self._nonces = itertools.count(1)
        self.router = router

        router.get("/directory").mock(side_effect=self._directory)
        router.head("/new-nonce").mock(side_effect=self._new_nonce)
        router.post("/new-account").mock(side_effect=self._new_account)
        router.post("/new-authz").mock(side_effect=self._new_authz)
        router.post("/authz/1").mock(side_effect=self._authz)
        router.post(path__startswith="/chall/").mock(side_effect=self._challenge)

    # -- helpers ----------------------------------------------------------

    def _headers(self, **extra: str) -> dict[str, str]:
        return {"Replay-Nonce": f"nonce-{next(self._nonces)}", **extra}

    @staticmethod
    def decode(request: httpx.Request) -> tuple[dict[str, Any], Any]:
        body = json.loads(request.content)
        protected = json.loads(b64decode(body["protected"]))
        payload = json.loads(b64decode(body["payload"])) if body["payload"] else None
        return protected, payload

    def _problem(self, status: int, problem: dict[str, Any]) -> httpx.Response:
        return httpx.Response(
            status,
            json=problem,
            headers=self._headers(**{"Content-Type": "application/problem+json"}),
        )

    def _transport_failure(self, request: httpx.Request) -> None:
        remaining = self.transport_failures.get(request.url.path, 0)
        if remaining > 0:
            self.transport_failures[request.url.path] = remaining - 1
            raise self.transport_error("request failed", request=request)

    def _bad_nonce(self) -> httpx.Response | None:
        if self.bad_nonces > 0:
            self.bad_nonces -= 1
            return self._problem(
                400, {"type": "urn:ietf:params:acme:error:badNonce", "detail": "stale nonce"}
            )
        return None

    @property
    def challenge_status(self) -> str:
        if not self.submissions:
            return "pending"
        index = min(max(self.polls - 1, 0), len(self.poll_statuses) - 1)
        return self.poll_statuses[index] if self.polls else "processing"

    def challenge_json(self, kind: str, token: str) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": kind,
            "url": f"{ACME_BASE}/chall/{kind}",
            "status": self.challenge_status if kind == self.submitted_kind else "pending",
            "token": token,
        }
        if data["status"] == "invalid" and self.challenge_error:
            data["error"] = self.challenge_error
        return data

    @property
    def submitted_kind(self) -> str | None:
        return self.submissions[0][0] if self.submissions else None

    def authz_json(self) -> dict[str, Any]:
        status = "pending"
        if self.submitted_kind and self.challenge_status in ("valid", "invalid"):
            status = self.challenge_status
        return {
            "status": status,
            "identifier": self.identifier or {"type": "dns", "value": "example.org"},
            "challenges": [self.challenge_json(kind, token) for kind, token in self.offered],
        }

    # -- routes -------------------------------------------------------------

    def _directory(self, request: httpx.Request) -> httpx.Response:
        self._transport_failure(request)
        directory = {
            "newNonce": f"{ACME_BASE}/new-nonce",
            "newAccount": f"{ACME_BASE}/new-account",
            "newOrder": f"{ACME_BASE}/new-order",
            "revokeCert": f"{ACME_BASE}/revoke-cert",
            "keyChange": f"{ACME_BASE}/key-change",
        }
        if self.support_new_authz:
            directory["newAuthz"] = f"{ACME_BASE}/new-authz"
        return httpx.Response(200, json=directory)

    def _new_nonce(self, request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers=self._headers())

    def _new_account(self, request: httpx.Request) -> httpx.Response:
        protected, payload = self.decode(request)
        self.account_requests.append({"protected": protected, "payload": payload})
        if self.account_problem:
            return self._problem(*self.account_problem)
        created = len(self.account_requests) == 1
        return httpx.Response(
            201 if created else 200,
            json={"status": self.account_status, "contact": payload.get("contact")},
            headers=self._headers(Location=ACCOUNT_URL),
        )

    def _new_authz(self, request: httpx.Request) -> httpx.Response:
        self._transport_failure(request)
        if (response := self._bad_nonce()) is not None:
            return response
        protected, payload = self.decode(request)
        self.authz_requests.append(protected)
        if self.authz_problem:
            return self._problem(*self.authz_problem)
        self.identifier = payload["identifier"]
        return httpx.Response(
            201, json=self.authz_json(), headers=self._headers(Location=AUTHZ_URL)
        )

    def _authz(self, request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=self.authz_json(), headers=self._headers())

    def _challenge(self, request: httpx.Request) -> httpx.Response:
        self._transport_failure(request)
        kind = request.url.path.rsplit("/", 1)[-1]
        token = dict(self.offered)[kind]
        _, payload = self.decode(request)
        extra = {}
        if payload is None:
            self.polls += 1
            if self.poll_retry_after is not None:
                extra["Retry-After"] = self.poll_retry_after
        else:
            self.submissions.append((kind, payload))
        return httpx.Response(
            200, json=self.challenge_json(kind, token), headers=self._headers(**extra)
        )


@pytest.fixture
def filer() -> MemoryFiler:
    return MemoryFiler()


@pytest.fixture
def dns_provider() -> RecordingDnsProvider:
    return RecordingDnsProvider()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def acme() -> Generator[FakeAcmeServer]:
    """A fake ACME authority at https://acme.test."""
    with respx.mock(base_url=ACME_BASE, assert_all_called=False) as router:
        yield FakeAcmeServer(router)


class LogCapture:
    """Helper class to capture and inspect log records."""

    def __init__(self, handler: logging.handlers.MemoryHandler) -> None:
        self._handler = handler

    @property
    def records(self) -> list[logging.LogRecord]:
        """Get all captured log records."""
        return self._handler.buffer

    def get_records(
        self, level: int | None = None, name: str | None = None
    ) -> list[logging.LogRecord]:
        """Get log records filtered by level and/or logger name prefix."""
        records = self.records
        if level is not None:
            records = [r for r in records if r.levelno == level]
        if name is not None:
            records = [r for r in records if r.name.startswith(name)]
        return records

    def get_messages(self, level: int | None = None, name: str | None = None) -> list[str]:
        """Get log messages filtered by level and/or logger name prefix."""
        return [r.getMessage() for r in self.get_records(level, name)]

    def clear(self) -> None:
        """Clear all captured log records."""
        self._handler.buffer.clear()


@pytest.fixture
def log_capture() -> Generator[LogCapture]:
    """Capture logs from the dnsproof package during a test.

    Usage:
        def test_something(log_capture):
            # do something that logs
            assert "Account ready" in log_capture.get_messages(logging.INFO)
    """
    handler = logging.handlers.MemoryHandler(capacity=1000)
    handler.setLevel(logging.DEBUG)

    package_logger = logging.getLogger("dnsproof")
    original_level = package_logger.level
    package_logger.setLevel(logging.DEBUG)
    package_logger.addHandler(handler)

    try:
        yield LogCapture(handler)
    finally:
        package_logger.removeHandler(handler)
        package_logger.setLevel(original_level)
        handler.close()
