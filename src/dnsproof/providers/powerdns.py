"""PowerDNS provider for DNS-01 challenges."""

import time
from collections.abc import Callable
from typing import Any

import httpx

from dnsproof._logging import get_logger
from dnsproof.exceptions import SolverError
from dnsproof.providers.base import DnsProvider

logger = get_logger(__name__)


class PowerDnsProvider(DnsProvider):
    """DNS provider for a PowerDNS authoritative server.

    Records are changed through the PowerDNS HTTP API. A 204 response
    means the authoritative server has the change, so no propagation
    wait is needed.

    Args:
        api_url: Base URL of the PowerDNS API (e.g., "http://localhost:8081").
        api_key: API key for the X-API-Key header.
        server_id: PowerDNS server ID.
        timeout: HTTP request timeout in seconds.
        max_retries: Attempts for requests failing at the transport level.
        http: httpx client to use (one is created if omitted).
    """

    def __init__(
        self,
        api_url: str,
        api_key: str,
        server_id: str = "localhost",
        timeout: int = 30,
        max_retries: int = 3,
        http: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.server_id = server_id
        self.timeout = timeout
        self.max_retries = max_retries
        self._owns_http = http is None
        self._http = http or httpx.Client(timeout=timeout)
        self._sleep = sleep

    def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_http:
            self._http.close()

    def __enter__(self) -> "PowerDnsProvider":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @property
    def _zones_url(self) -> str:
        return f"{self.api_url}/api/v1/servers/{self.server_id}/zones"

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        headers = {"X-API-Key": self.api_key}
        for attempt in range(1, self.max_retries + 1):
            try:
                return self._http.request(method, url, headers=headers, **kwargs)
            except httpx.TransportError as e:
                if attempt == self.max_retries:
                    raise SolverError(f"PowerDNS API unreachable: {e}") from e
                logger.warning(
                    "PowerDNS request failed, retrying",
                    extra={"url": url, "attempt": attempt, "error": str(e)},
                )
                self._sleep(0.5 * 2 ** (attempt - 1))
            except httpx.RequestError as e:
                raise SolverError(f"PowerDNS request failed: {e}") from e
        raise AssertionError("unreachable")

    def _find_zone(self, name: str) -> str:
        """Find the most specific zone containing ``name`` by probing parents.

        Returns:
            The zone name (with trailing dot).

        Raises:
            SolverError: If no matching zone is found.
        """
        parts = name.rstrip(".").split(".")
        for i in range(len(parts) - 1):
            candidate = ".".join(parts[i:]) + "."
            response = self._request("GET", f"{self._zones_url}/{candidate}")
            if response.status_code == 200:
                logger.debug("Zone found", extra={"record_name": name, "zone": candidate})
                return candidate
        raise SolverError(f"No PowerDNS zone found for {name}")

    def _patch_rrset(self, name: str, value: str, changetype: str) -> None:
        zone = self._find_zone(name)
        rrset: dict[str, Any] = {
            "name": name.rstrip(".") + ".",
            "type": "TXT",
            "changetype": changetype,
        }
        if changetype == "REPLACE":
            rrset["ttl"] = 60
            rrset["records"] = [{"content": f'"{value}"', "disabled": False}]

        response = self._request(
            "PATCH", f"{self._zones_url}/{zone}", json={"rrsets": [rrset]}
        )
        if response.status_code == 204:
            return

        try:
            detail = response.json().get("error", response.text)
        except ValueError:
            detail = response.text or "Unknown error"
        logger.error(
            "PowerDNS API error",
            extra={"zone": zone, "status_code": response.status_code, "detail": detail},
        )
        raise SolverError(
            f"PowerDNS {changetype} of {name} failed ({response.status_code}): {detail}"
        )

    def upsert_txt(self, name: str, value: str) -> None:
        self._patch_rrset(name, value, "REPLACE")
        logger.info("TXT record upserted", extra={"record_name": name})

    def delete_txt(self, name: str, value: str) -> None:
        self._patch_rrset(name, value, "DELETE")
        logger.info("TXT record deleted", extra={"record_name": name})
