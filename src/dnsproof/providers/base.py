"""Abstract base class for DNS providers."""

from abc import ABC, abstractmethod


class DnsProvider(ABC):
    """Abstract interface for DNS providers.

    DNS providers create and delete the TXT records used for DNS-01
    challenge validation. The hosted zone is inferred from the record
    name. Implementations raise :class:`dnsproof.exceptions.SolverError`
    when a change cannot be made.
    """

    @abstractmethod
    def upsert_txt(self, name: str, value: str) -> None:
        """Create or replace the TXT record ``name`` with ``value``.

        Args:
            name: Fully qualified record name (e.g. ``_acme-challenge.example.org``).
            value: TXT record value, unquoted.
        """
        ...

    @abstractmethod
    def delete_txt(self, name: str, value: str) -> None:
        """Delete the TXT record ``name`` holding ``value``.

        Args:
            name: Fully qualified record name.
            value: TXT record value that was published.
        """
        ...
