"""AWS Route 53 provider for DNS-01 challenges."""

import time
from collections.abc import Callable
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from dnsproof._logging import get_logger
from dnsproof.exceptions import SolverError
from dnsproof.providers.base import DnsProvider

logger = get_logger(__name__)


class Route53Provider(DnsProvider):
    """DNS provider for zones hosted in AWS Route 53.

    Args:
        client: boto3 Route 53 client (created from the default session if omitted).
        ttl: TTL of the published TXT record, in seconds.
        wait: Wait for an upsert to reach ``INSYNC`` before returning.
        change_poll_interval: Seconds between ``GetChange`` calls.
        max_change_polls: Upper bound on ``GetChange`` calls.
        sleep: Sleep function (injectable for tests).
    """

    def __init__(
        self,
        client: Any = None,
        ttl: int = 10,
        wait: bool = True,
        change_poll_interval: float = 5.0,
        max_change_polls: int = 120,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.r53 = client if client is not None else boto3.client("route53")
        self.ttl = ttl
        self.wait = wait
        self.change_poll_interval = change_poll_interval
        self.max_change_polls = max_change_polls
        self._sleep = sleep

    def _find_zone_id(self, name: str) -> str:
        """Find the id of the most specific public hosted zone containing ``name``.

        Raises:
            SolverError: If no hosted zone matches.
        """
        target_labels = name.rstrip(".").lower().split(".")
        zones: list[tuple[str, str]] = []
        paginator = self.r53.get_paginator("list_hosted_zones")
        for page in paginator.paginate():
            for zone in page["HostedZones"]:
                if zone.get("Config", {}).get("PrivateZone"):
                    continue
                candidate_labels = zone["Name"].rstrip(".").lower().split(".")
                if candidate_labels == target_labels[-len(candidate_labels) :]:
                    zones.append((zone["Name"], zone["Id"]))

        if not zones:
            raise SolverError(f"Unable to find a Route53 hosted zone for {name}")

        zones.sort(key=lambda z: len(z[0]), reverse=True)
        logger.debug("Hosted zone found", extra={"record_name": name, "zone": zones[0][0]})
        return zones[0][1]

    def _change_txt_record(self, action: str, name: str, value: str) -> str:
        try:
            zone_id = self._find_zone_id(name)
            response = self.r53.change_resource_record_sets(
                HostedZoneId=zone_id,
                ChangeBatch={
                    "Comment": f"dnsproof challenge {action}",
                    "Changes": [
                        {
                            "Action": action,
                            "ResourceRecordSet": {
                                "Name": name,
                                "Type": "TXT",
                                "TTL": self.ttl,
                                # TXT values are quoted in Route 53
                                "ResourceRecords": [{"Value": f'"{value}"'}],
                            },
                        }
                    ],
                },
            )
        except (ClientError, BotoCoreError) as e:
            raise SolverError(f"Route53 {action} of {name} failed: {e}") from e
        return response["ChangeInfo"]["Id"]

    def _wait_for_change(self, change_id: str) -> None:
        """Wait for a change to reach all Route 53 name servers."""
        status = "PENDING"
        for _ in range(self.max_change_polls):
            try:
                response = self.r53.get_change(Id=change_id)
            except (ClientError, BotoCoreError) as e:
                raise SolverError(f"Route53 GetChange {change_id} failed: {e}") from e
            status = response["ChangeInfo"]["Status"]
            if status == "INSYNC":
                return
            self._sleep(self.change_poll_interval)
        raise SolverError(f"Timed out waiting for Route53 change {change_id} (status {status})")

    def upsert_txt(self, name: str, value: str) -> None:
        change_id = self._change_txt_record("UPSERT", name, value)
        if self.wait:
            self._wait_for_change(change_id)
        logger.info("TXT record upserted", extra={"record_name": name, "change_id": change_id})

    def delete_txt(self, name: str, value: str) -> None:
        change_id = self._change_txt_record("DELETE", name, value)
        logger.info("TXT record deleted", extra={"record_name": name, "change_id": change_id})
