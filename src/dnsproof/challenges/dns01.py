"""DNS-01 challenge solver."""

from dnsproof._logging import get_logger
from dnsproof.challenges.base import ChallengeSolver, register_solver
from dnsproof.exceptions import SolverError
from dnsproof.keyauth import dns01_record_name, dns01_txt_value
from dnsproof.models import ChallengeType
from dnsproof.providers.base import DnsProvider

logger = get_logger(__name__)


@register_solver
class Dns01Solver(ChallengeSolver):
    """Publishes the DNS-01 TXT record through a DNS provider.

    Returns from :meth:`solve` once the provider acknowledges the write;
    propagation is covered by the authority's own validation polling.

    Args:
        provider: DNS provider hosting the domain's zone.
        domain: Domain being authorized.
    """

    kind = ChallengeType.DNS_01

    def __init__(self, provider: DnsProvider, domain: str):
        self.provider = provider
        self.domain = domain

    @property
    def record_name(self) -> str:
        return dns01_record_name(self.domain)

    def solve(self, key_authorization: str) -> None:
        value = dns01_txt_value(key_authorization)
        try:
            self.provider.upsert_txt(self.record_name, value)
        except SolverError:
            raise
        except Exception as e:
            raise SolverError(f"failed to publish {self.record_name}: {e}") from e
        logger.info(
            "Challenge record published",
            extra={"domain": self.domain, "record_name": self.record_name},
        )

    def cleanup(self, key_authorization: str) -> None:
        value = dns01_txt_value(key_authorization)
        try:
            self.provider.delete_txt(self.record_name, value)
        except SolverError:
            raise
        except Exception as e:
            raise SolverError(f"failed to delete {self.record_name}: {e}") from e
        logger.info(
            "Challenge record removed",
            extra={"domain": self.domain, "record_name": self.record_name},
        )
