"""DNS providers for DNS-01 challenge solving."""

from dnsproof.providers.base import DnsProvider
from dnsproof.providers.powerdns import PowerDnsProvider
from dnsproof.providers.route53 import Route53Provider

__all__ = ["DnsProvider", "PowerDnsProvider", "Route53Provider"]
