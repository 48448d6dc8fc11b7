"""Unit tests for DNS providers."""

import json
from unittest.mock import MagicMock

import httpx
import pytest
import respx
from botocore.exceptions import ClientError

from dnsproof.exceptions import SolverError
from dnsproof.providers import DnsProvider, PowerDnsProvider, Route53Provider

ZONES_URL = "http://localhost:8081/api/v1/servers/localhost/zones"
RECORD = "_acme-challenge.test.example.org"


def _route53_client(zones=None, statuses=("INSYNC",)):
    """MagicMock Route 53 client with paginated hosted zones."""
    client = MagicMock()
    if zones is None:
        zones = [{"Id": "/hostedzone/Z1", "Name": "example.org.", "Config": {}}]
    client.get_paginator.return_value.paginate.return_value = [{"HostedZones": zones}]
    client.change_resource_record_sets.return_value = {
        "ChangeInfo": {"Id": "/change/C1", "Status": "PENDING"}
    }
    client.get_change.side_effect = [{"ChangeInfo": {"Status": s}} for s in statuses]
    return client


class TestDnsProviderInterface:
    """Tests for DnsProvider abstract interface."""

    def test_providers_implement_interface(self):
        assert isinstance(Route53Provider(client=MagicMock()), DnsProvider)
        provider = PowerDnsProvider(api_url="http://localhost:8081", api_key="k")
        assert isinstance(provider, DnsProvider)

    def test_cannot_instantiate_abstract(self):
        with pytest.raises(TypeError):
            DnsProvider()


class TestRoute53Provider:
    """Tests for Route53Provider against a mocked boto3 client."""

    def test_upsert_sends_quoted_value(self):
        client = _route53_client()
        provider = Route53Provider(client=client, sleep=lambda _: None)

        provider.upsert_txt(RECORD, "txt-value")

        kwargs = client.change_resource_record_sets.call_args.kwargs
        assert kwargs["HostedZoneId"] == "/hostedzone/Z1"
        change = kwargs["ChangeBatch"]["Changes"][0]
        assert change["Action"] == "UPSERT"
        assert change["ResourceRecordSet"]["Name"] == RECORD
        assert change["ResourceRecordSet"]["Type"] == "TXT"
        assert change["ResourceRecordSet"]["TTL"] == 10
        assert change["ResourceRecordSet"]["ResourceRecords"] == [{"Value": '"txt-value"'}]

    def test_upsert_waits_until_insync(self):
        client = _route53_client(statuses=("PENDING", "PENDING", "INSYNC"))
        sleeps = []
        provider = Route53Provider(client=client, change_poll_interval=2.0, sleep=sleeps.append)

        provider.upsert_txt(RECORD, "v")

        assert client.get_change.call_count == 3
        client.get_change.assert_called_with(Id="/change/C1")
        assert sleeps == [2.0, 2.0]

    def test_upsert_without_wait(self):
        client = _route53_client()
        provider = Route53Provider(client=client, wait=False)

        provider.upsert_txt(RECORD, "v")

        client.get_change.assert_not_called()

    def test_change_never_insync_raises(self):
        client = _route53_client(statuses=("PENDING",) * 3)
        provider = Route53Provider(client=client, max_change_polls=3, sleep=lambda _: None)

        with pytest.raises(SolverError, match="Timed out"):
            provider.upsert_txt(RECORD, "v")

    def test_delete_does_not_wait(self):
        client = _route53_client()
        provider = Route53Provider(client=client)

        provider.delete_txt(RECORD, "v")

        change = client.change_resource_record_sets.call_args.kwargs["ChangeBatch"]["Changes"][0]
        assert change["Action"] == "DELETE"
        assert change["ResourceRecordSet"]["ResourceRecords"] == [{"Value": '"v"'}]
        client.get_change.assert_not_called()

    def test_prefers_most_specific_zone(self):
        client = _route53_client(
            zones=[
                {"Id": "/hostedzone/Z1", "Name": "example.org.", "Config": {}},
                {"Id": "/hostedzone/Z2", "Name": "test.example.org.", "Config": {}},
            ]
        )
        provider = Route53Provider(client=client)

        assert provider._find_zone_id(RECORD) == "/hostedzone/Z2"

    def test_private_zones_skipped(self):
        client = _route53_client(
            zones=[
                {"Id": "/hostedzone/Z1", "Name": "example.org.", "Config": {}},
                {
                    "Id": "/hostedzone/ZP",
                    "Name": "test.example.org.",
                    "Config": {"PrivateZone": True},
                },
            ]
        )
        provider = Route53Provider(client=client)

        assert provider._find_zone_id(RECORD) == "/hostedzone/Z1"

    def test_suffix_must_match_whole_labels(self):
        """notexample.org is not a parent of example.org."""
        client = _route53_client(
            zones=[{"Id": "/hostedzone/Z9", "Name": "notexample.org.", "Config": {}}]
        )
        provider = Route53Provider(client=client)

        with pytest.raises(SolverError, match="Unable to find a Route53 hosted zone"):
            provider.upsert_txt("_acme-challenge.example.org", "v")

        client.change_resource_record_sets.assert_not_called()

    def test_client_error_becomes_solver_error(self):
        client = _route53_client()
        client.change_resource_record_sets.side_effect = ClientError(
            {"Error": {"Code": "InvalidChangeBatch", "Message": "bad"}},
            "ChangeResourceRecordSets",
        )
        provider = Route53Provider(client=client)

        with pytest.raises(SolverError, match="Route53 UPSERT") as exc_info:
            provider.upsert_txt(RECORD, "v")

        assert isinstance(exc_info.value.__cause__, ClientError)


def _mock_zones(found="example.org."):
    """Route zone probes: ``found`` exists, everything else is a 404."""
    respx.get(f"{ZONES_URL}/{found}").mock(return_value=httpx.Response(200, json={"name": found}))
    respx.get(url__startswith=ZONES_URL).mock(
        return_value=httpx.Response(404, json={"error": "Could not find domain"})
    )


class TestPowerDnsProvider:
    """Tests for PowerDnsProvider configuration."""

    def test_provider_stores_configuration(self):
        provider = PowerDnsProvider(
            api_url="http://pdns:8081/", api_key="secret", server_id="ns1", timeout=60
        )

        assert provider.api_url == "http://pdns:8081"
        assert provider.api_key == "secret"
        assert provider.server_id == "ns1"
        assert provider.timeout == 60
        assert provider._zones_url == "http://pdns:8081/api/v1/servers/ns1/zones"

    def test_defaults(self):
        provider = PowerDnsProvider(api_url="http://localhost:8081", api_key="secret")

        assert provider.server_id == "localhost"
        assert provider.timeout == 30

    def test_context_manager_closes_own_client(self):
        with PowerDnsProvider(api_url="http://localhost:8081", api_key="secret") as provider:
            http = provider._http
            assert not http.is_closed

        assert http.is_closed

    def test_injected_client_left_open(self):
        with httpx.Client() as http:
            with PowerDnsProvider(api_url="http://localhost:8081", api_key="secret", http=http):
                pass

            assert not http.is_closed


class TestPowerDnsProviderFindZone:
    """Unit tests for PowerDnsProvider._find_zone()."""

    @respx.mock
    def test_find_zone_parent(self):
        _mock_zones("example.org.")
        provider = PowerDnsProvider(api_url="http://localhost:8081", api_key="secret")

        assert provider._find_zone(RECORD) == "example.org."

    @respx.mock
    def test_find_zone_prefers_most_specific(self):
        """Probing starts at the longest candidate."""
        _mock_zones("test.example.org.")
        provider = PowerDnsProvider(api_url="http://localhost:8081", api_key="secret")

        assert provider._find_zone(RECORD) == "test.example.org."

    @respx.mock
    def test_find_zone_never_probes_tld(self):
        route = respx.get(url__startswith=ZONES_URL).mock(return_value=httpx.Response(404))
        provider = PowerDnsProvider(api_url="http://localhost:8081", api_key="secret")

        with pytest.raises(SolverError, match="No PowerDNS zone found"):
            provider._find_zone("_acme-challenge.example.org")

        probed = [call.request.url.path.rsplit("/", 1)[-1] for call in route.calls]
        assert probed == ["_acme-challenge.example.org.", "example.org."]


class TestPowerDnsProviderRecords:
    """Unit tests for record changes."""

    @respx.mock
    def test_upsert_payload(self):
        _mock_zones()
        patch_route = respx.patch(f"{ZONES_URL}/example.org.").mock(
            return_value=httpx.Response(204)
        )
        provider = PowerDnsProvider(api_url="http://localhost:8081", api_key="my-secret-key")

        provider.upsert_txt(RECORD, "my-token")

        request = patch_route.calls.last.request
        assert request.headers["X-API-Key"] == "my-secret-key"
        rrset = json.loads(request.content)["rrsets"][0]
        assert rrset["name"] == "_acme-challenge.test.example.org."
        assert rrset["type"] == "TXT"
        assert rrset["changetype"] == "REPLACE"
        assert rrset["ttl"] == 60
        assert rrset["records"] == [{"content": '"my-token"', "disabled": False}]

    @respx.mock
    def test_delete_payload(self):
        _mock_zones()
        patch_route = respx.patch(f"{ZONES_URL}/example.org.").mock(
            return_value=httpx.Response(204)
        )
        provider = PowerDnsProvider(api_url="http://localhost:8081", api_key="secret")

        provider.delete_txt(RECORD, "my-token")

        rrset = json.loads(patch_route.calls.last.request.content)["rrsets"][0]
        assert rrset["changetype"] == "DELETE"
        assert "ttl" not in rrset
        assert "records" not in rrset

    @respx.mock
    def test_error_response_raises(self):
        _mock_zones()
        respx.patch(f"{ZONES_URL}/example.org.").mock(
            return_value=httpx.Response(422, json={"error": "RRset has invalid content"})
        )
        provider = PowerDnsProvider(api_url="http://localhost:8081", api_key="secret")

        with pytest.raises(SolverError, match=r"\(422\): RRset has invalid content"):
            provider.upsert_txt(RECORD, "token")

    @respx.mock
    def test_plain_text_error(self):
        _mock_zones()
        respx.patch(f"{ZONES_URL}/example.org.").mock(
            return_value=httpx.Response(500, text="Internal Server Error")
        )
        provider = PowerDnsProvider(api_url="http://localhost:8081", api_key="secret")

        with pytest.raises(SolverError, match="Internal Server Error"):
            provider.upsert_txt(RECORD, "token")

    @respx.mock
    def test_transport_errors_retried(self):
        sleeps = []
        route = respx.get(f"{ZONES_URL}/{RECORD}.").mock(
            side_effect=[httpx.ConnectError("refused"), httpx.Response(200, json={})]
        )
        provider = PowerDnsProvider(
            api_url="http://localhost:8081", api_key="secret", sleep=sleeps.append
        )

        assert provider._find_zone(RECORD) == f"{RECORD}."
        assert route.call_count == 2
        assert sleeps == [0.5]

    @respx.mock
    def test_transport_errors_exhausted(self):
        respx.get(url__startswith=ZONES_URL).mock(side_effect=httpx.ConnectError("refused"))
        provider = PowerDnsProvider(
            api_url="http://localhost:8081", api_key="secret", max_retries=2, sleep=lambda _: None
        )

        with pytest.raises(SolverError, match="unreachable"):
            provider.upsert_txt(RECORD, "token")

    @respx.mock
    def test_decoding_error_not_retried(self):
        sleeps = []
        route = respx.get(url__startswith=ZONES_URL).mock(
            side_effect=httpx.DecodingError("bad gzip")
        )
        provider = PowerDnsProvider(
            api_url="http://localhost:8081", api_key="secret", sleep=sleeps.append
        )

        with pytest.raises(SolverError, match="PowerDNS request failed"):
            provider.upsert_txt(RECORD, "token")

        assert route.call_count == 1
        assert sleeps == []
