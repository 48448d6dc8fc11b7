"""Authorization orchestration: one run proves control of one domain."""

import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

import httpx

from dnsproof._logging import Timer, get_domain_extra, get_logger, reset_domain, set_domain
from dnsproof.challenges import ChallengeSolver, create_solver
from dnsproof.client import DirectoryClient
from dnsproof.config import Settings
from dnsproof.exceptions import (
    AuthorizationError,
    DnsproofError,
    SolverError,
    UnsupportedChallengeError,
)
from dnsproof.filer import Filer, S3Filer
from dnsproof.keyauth import build_key_authorization
from dnsproof.models import Authorization, ChallengeType, Identifier
from dnsproof.providers import DnsProvider, Route53Provider
from dnsproof.store import Store

logger = get_logger(__name__)


@dataclass
class RunContext:
    """Collaborators for one authorization run.

    Built per run and passed down explicitly, so concurrent runs for
    different domains share nothing but the storage namespace.

    ``solver_options`` holds, per challenge type, the keyword arguments
    its solver needs besides the domain.
    """

    filer: Filer
    dns_provider: DnsProvider | None = None
    http: httpx.Client | None = None
    ca_cert: str | bool | None = None
    poll_interval: float = 2.0
    max_wait: float = 120.0
    cancel: threading.Event | None = None
    clock: Callable[[], float] = time.monotonic
    sleep: Callable[[float], None] = time.sleep
    solver_options: dict[str, dict[str, Any]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.dns_provider is not None:
            self.solver_options.setdefault(
                str(ChallengeType.DNS_01), {"provider": self.dns_provider}
            )

    @classmethod
    def from_settings(
        cls, settings: Settings, cancel: threading.Event | None = None
    ) -> "RunContext":
        """S3 storage and Route 53 DNS, the AWS deployment."""
        return cls(
            filer=S3Filer(settings.s3_bucket, settings.s3_kms_key_id),
            dns_provider=Route53Provider(),
            poll_interval=settings.poll_interval,
            max_wait=settings.max_wait,
            cancel=cancel,
        )


@contextmanager
def _stage(name: str) -> Iterator[None]:
    """Record the failing stage on any dnsproof error raised inside."""
    try:
        yield
    except DnsproofError as e:
        if e.stage is None:
            e.stage = name
            e.add_note(f"stage: {name}")
            logger.error(
                "Authorization failed",
                extra={"stage": name, "error": str(e), **get_domain_extra()},
            )
        raise


@dataclass
class AuthzService:
    """Authorize ``domain`` for the account owned by ``email``.

    Args:
        domain: Domain to authorize.
        email: Account owner email.
        directory_url: ACME directory URL.
        context: Collaborators for this run.
        challenge: Challenge type to solve.
    """

    domain: str
    email: str
    directory_url: str
    context: RunContext
    challenge: str = ChallengeType.DNS_01
    cleanup_error: SolverError | None = field(default=None, init=False)

    def run(self) -> Authorization:
        """Run the authorization end to end.

        Returns:
            The final Authorization, as saved in the store.

        Raises:
            DnsproofError: The first failing stage's error, with ``stage`` set.
        """
        token = set_domain(self.domain)
        try:
            with Timer() as t:
                authorization = self._run()
            logger.info(
                "Challenge has been solved",
                extra={
                    "status": str(authorization.status),
                    "elapsed_ms": t.elapsed_ms,
                    **get_domain_extra(),
                },
            )
            return authorization
        finally:
            reset_domain(token)

    @contextmanager
    def _published(self, solver: ChallengeSolver, key_authorization: str) -> Iterator[None]:
        """Solve the challenge, and clean it up on every way out."""
        with _stage("solve"):
            solver.solve(key_authorization)
        try:
            yield
        finally:
            try:
                solver.cleanup(key_authorization)
            except SolverError as e:
                self.cleanup_error = e
                logger.warning(
                    "Challenge cleanup failed",
                    extra={"error": str(e), **get_domain_extra()},
                )

    def _run(self) -> Authorization:
        ctx = self.context

        with _stage("validate"):
            try:
                identifier = Identifier(value=self.domain)
            except ValueError as e:
                raise AuthorizationError(
                    detail=f"invalid domain name: {self.domain!r}",
                    type="urn:ietf:params:acme:error:malformed",
                ) from e
            # RFC 8555 Section 7.4.1: no wildcards in newAuthz
            if identifier.value.startswith("*."):
                raise AuthorizationError(
                    detail=f"wildcard names cannot be pre-authorized: {self.domain!r}",
                    type="urn:ietf:params:acme:error:malformed",
                )

        with _stage("store_init"):
            store = Store.init(self.email, ctx.filer)

        logger.info(
            "Start authorization",
            extra={"challenge": str(self.challenge), **get_domain_extra()},
        )

        client = DirectoryClient(
            self.directory_url,
            store,
            http=ctx.http,
            ca_cert=ctx.ca_cert,
            poll_interval=ctx.poll_interval,
            max_wait=ctx.max_wait,
            clock=ctx.clock,
            sleep=ctx.sleep,
        )
        with client:
            with _stage("client_init"):
                client.init()

            with _stage("new_authorization"):
                pending = client.new_authorization(identifier)

            with _stage("select_challenge"):
                challenge = pending.find_challenge(str(self.challenge))
                if challenge is None:
                    raise UnsupportedChallengeError(
                        str(self.challenge), offered=[c.type for c in pending.challenges]
                    )
                solver = create_solver(
                    self.challenge,
                    domain=identifier.value,
                    **ctx.solver_options.get(str(self.challenge), {}),
                )
            logger.info(
                "Challenge selected",
                extra={
                    "challenge": str(self.challenge),
                    "url": challenge.url,
                    **get_domain_extra(),
                },
            )

            with _stage("build_key_authorization"):
                key_authorization = build_key_authorization(
                    challenge.token or "", store.load_public_key()
                )
            logger.debug(
                "Key authorization built",
                extra={"key_authorization": key_authorization, **get_domain_extra()},
            )

            with self._published(solver, key_authorization):
                with _stage("submit_challenge"):
                    client.solve_challenge(challenge, key_authorization)
                with _stage("wait_challenge"):
                    client.wait_challenge_done(challenge, cancel=ctx.cancel)

            with _stage("get_authorization"):
                final = client.get_authorization(pending.url)

        with _stage("save_authorization"):
            store.save_authorization(final)

        return final


def run_authorization(
    settings: Settings,
    domain: str | None = None,
    challenge: str | None = None,
    context: RunContext | None = None,
) -> Authorization:
    """Run an authorization from settings, with AWS collaborators by default."""
    service = AuthzService(
        domain=domain or settings.domain,
        email=settings.email,
        directory_url=settings.resolved_directory_url(),
        context=context or RunContext.from_settings(settings),
        challenge=challenge or settings.challenge,
    )
    return service.run()
