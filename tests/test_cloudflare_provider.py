"""Unit tests for CloudflareDNSProvider."""

from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock, patch

import pytest
import requests

from cloudflare_dns_operator.errors import (
    InvalidSpec,
    ProviderAuthError,
    ProviderConflict,
    ProviderNotFound,
    ProviderRateLimited,
    ProviderRejected,
    ProviderUnavailable,
    ReferenceNotFound,
)
from cloudflare_dns_operator.provider import (
    CloudflareDNSProvider,
    RecordSpec,
    RemoteRecord,
    check_content,
    record_payload,
    remote_record,
    split_comment,
    stamp_comment,
)
from cloudflare_dns_operator.resources import RecordType

API = "https://api.cloudflare.com/client/v4"


def create_response(
    status: int = 200,
    result: Any = None,
    errors: Optional[List[Dict[str, Any]]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> MagicMock:
    response = MagicMock()
    response.status_code = status
    response.reason = "reason"
    response.headers = headers or {}
    response.json.return_value = {
        "success": 200 <= status < 300,
        "errors": errors or [],
        "result": result,
    }
    return response


def create_test_provider() -> CloudflareDNSProvider:
    return CloudflareDNSProvider("token", timeout_seconds=5)


def api_record(**overrides: Any) -> Dict[str, Any]:
    record = {
        "id": "rec-1",
        "name": "www.example.com",
        "type": "A",
        "content": "1.2.3.4",
        "ttl": 1,
        "proxied": False,
        "tags": [],
        "comment": "cloudflare-dns-operator/owner=default/www",
    }
    record.update(overrides)
    return record


SPEC = RecordSpec(
    name="www.example.com", type=RecordType.A, content="1.2.3.4", owner="default/www"
)


class TestCloudflareConnection:
    """Tests for token verification."""

    def test_test_connection_success(self) -> None:
        """Test an active token returns True."""
        provider = create_test_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = create_response(result={"status": "active"})

            assert provider.test_connection() is True
            mock_request.assert_called_once_with(
                "GET", f"{API}/user/tokens/verify", params=None, json=None, timeout=5
            )

    def test_test_connection_failure(self) -> None:
        """Test a connection error returns False."""
        provider = create_test_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.side_effect = requests.exceptions.ConnectionError("Connection refused")

            assert provider.test_connection() is False

    def test_bearer_token_header(self) -> None:
        provider = create_test_provider()

        assert provider._session.headers["Authorization"] == "Bearer token"


class TestCloudflareErrorMapping:
    """Tests for HTTP error classification."""

    @pytest.mark.parametrize(
        "status, errors, expected",
        [
            (500, [], ProviderUnavailable),
            (503, [], ProviderUnavailable),
            (401, [], ProviderAuthError),
            (403, [{"code": 10000, "message": "Authentication error"}], ProviderAuthError),
            (400, [{"code": 6003, "message": "Invalid request headers"}], ProviderAuthError),
            (404, [], ProviderNotFound),
            (400, [{"code": 81044, "message": "Record does not exist."}], ProviderNotFound),
            (400, [{"code": 81057, "message": "Record already exists."}], ProviderConflict),
            (400, [{"code": 9005, "message": "Content for A record is invalid."}], ProviderRejected),
        ],
    )
    def test_status_mapping(self, status, errors, expected) -> None:
        provider = create_test_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = create_response(status, errors=errors)

            with pytest.raises(expected):
                provider.update("zone-1", "rec-1", SPEC)

    def test_rate_limit_carries_retry_after(self) -> None:
        """Test 429 raises ProviderRateLimited with the Retry-After delay."""
        provider = create_test_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = create_response(429, headers={"Retry-After": "30"})

            with pytest.raises(ProviderRateLimited) as exc_info:
                provider.find("zone-1", "www.example.com", RecordType.A)

        assert exc_info.value.retry_after == 30.0

    def test_timeout_is_unavailable(self) -> None:
        provider = create_test_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.side_effect = requests.exceptions.Timeout("read timed out")

            with pytest.raises(ProviderUnavailable):
                provider.find("zone-1", "www.example.com", RecordType.A)

    def test_success_false_in_2xx_is_an_error(self) -> None:
        """Test a 200 with success=false is not treated as success."""
        provider = create_test_provider()
        response = create_response(200)
        response.json.return_value = {"success": False, "errors": [{"code": 1004, "message": "bad"}]}

        with patch.object(provider._session, "request", return_value=response):
            with pytest.raises(ProviderRejected):
                provider.find("zone-1", "www.example.com", RecordType.A)


class TestCloudflareZones:
    """Tests for zone lookups."""

    def test_find_zone_id(self) -> None:
        provider = create_test_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = create_response(
                result=[{"id": "zone-1", "name": "example.com", "status": "active"}]
            )

            assert provider.find_zone_id("Example.com.") == "zone-1"
            mock_request.assert_called_once_with(
                "GET", f"{API}/zones", params={"name": "example.com"}, json=None, timeout=5
            )

    def test_unknown_zone(self) -> None:
        provider = create_test_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = create_response(result=[])

            with pytest.raises(ReferenceNotFound):
                provider.find_zone_id("example.com")

    def test_list_zones(self) -> None:
        provider = create_test_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = create_response(
                result=[{"id": "zone-1", "name": "example.com", "status": "active"}]
            )

            assert provider.list_zones() == [
                {"id": "zone-1", "name": "example.com", "status": "active"}
            ]


class TestCloudflareRecords:
    """Tests for record find/create/update/delete."""

    def test_find_returns_remote_record(self) -> None:
        provider = create_test_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = create_response(result=[api_record()])

            record = provider.find("zone-1", "www.example.com", RecordType.A)

        assert record == RemoteRecord(
            id="rec-1",
            name="www.example.com",
            type="A",
            content="1.2.3.4",
            owner="default/www",
        )
        assert record.matches(SPEC)

    def test_find_prefers_owned_record(self) -> None:
        provider = create_test_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = create_response(
                result=[api_record(id="other", comment=None), api_record(id="mine")]
            )

            record = provider.find("zone-1", "www.example.com", RecordType.A, owner="default/www")

        assert record.id == "mine"

    def test_find_nothing(self) -> None:
        provider = create_test_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = create_response(result=[])

            assert provider.find("zone-1", "www.example.com", RecordType.A) is None

    def test_get_by_id(self) -> None:
        provider = create_test_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = create_response(result=api_record())

            record = provider.get("zone-1", "rec-1")

        assert record.id == "rec-1"
        assert record.owner == "default/www"
        method, url = mock_request.call_args.args
        assert (method, url) == ("GET", f"{API}/zones/zone-1/dns_records/rec-1")

    def test_get_missing_is_none(self) -> None:
        provider = create_test_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = create_response(
                404, errors=[{"code": 81044, "message": "Record does not exist."}]
            )

            assert provider.get("zone-1", "rec-1") is None

    def test_create_posts_payload(self) -> None:
        """Test create looks for an existing record, then POSTs."""
        provider = create_test_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.side_effect = [
                create_response(result=[]),
                create_response(result={"id": "new-id"}),
            ]

            record_id = provider.create("zone-1", SPEC)

        assert record_id == "new-id"
        method, url = mock_request.call_args.args
        assert (method, url) == ("POST", f"{API}/zones/zone-1/dns_records")
        assert mock_request.call_args.kwargs["json"] == {
            "name": "www.example.com",
            "type": "A",
            "ttl": 1,
            "proxied": False,
            "comment": "cloudflare-dns-operator/owner=default/www",
            "tags": [],
            "content": "1.2.3.4",
        }

    def test_repeated_create_returns_existing_id(self) -> None:
        """Test create is idempotent for records this owner already created."""
        provider = create_test_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = create_response(result=[api_record()])

            assert provider.create("zone-1", SPEC) == "rec-1"
            assert mock_request.call_count == 1

    def test_create_conflicts_with_foreign_record(self) -> None:
        provider = create_test_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = create_response(result=[api_record(comment="by hand")])

            with pytest.raises(ProviderConflict):
                provider.create("zone-1", SPEC)

    def test_update_puts_full_record(self) -> None:
        provider = create_test_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = create_response(result=api_record())

            provider.update("zone-1", "rec-1", SPEC)

        method, url = mock_request.call_args.args
        assert (method, url) == ("PUT", f"{API}/zones/zone-1/dns_records/rec-1")

    def test_delete_not_found_is_success(self) -> None:
        """Test deleting a record that is already gone does not raise."""
        provider = create_test_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = create_response(
                404, errors=[{"code": 81044, "message": "Record does not exist."}]
            )

            provider.delete("zone-1", "rec-1")


class TestRecordConversion:
    """Tests for payload building and remote record parsing."""

    def test_owner_stamp(self) -> None:
        assert stamp_comment("web tier", "apps/www") == (
            "web tier cloudflare-dns-operator/owner=apps/www"
        )
        assert stamp_comment(None, "apps/www") == "cloudflare-dns-operator/owner=apps/www"
        assert split_comment("web tier cloudflare-dns-operator/owner=apps/www") == (
            "web tier",
            "apps/www",
        )
        assert split_comment("by hand") == ("by hand", None)

    def test_mx_payload_splits_priority(self) -> None:
        spec = RecordSpec(name="example.com", type=RecordType.MX, content="10 mail.example.com")

        payload = record_payload(spec)

        assert payload["priority"] == 10
        assert payload["content"] == "mail.example.com"

    def test_srv_payload_uses_data(self) -> None:
        spec = RecordSpec(
            name="_sip._tcp.example.com", type=RecordType.SRV, content="10 5 5060 sip.example.com"
        )

        payload = record_payload(spec)

        assert "content" not in payload
        assert payload["data"] == {
            "priority": 10,
            "weight": 5,
            "port": 5060,
            "target": "sip.example.com",
        }

    def test_malformed_mx_content(self) -> None:
        spec = RecordSpec(name="example.com", type=RecordType.MX, content="mail.example.com")

        with pytest.raises(InvalidSpec):
            record_payload(spec)

    @pytest.mark.parametrize(
        "record_type, content",
        [
            (RecordType.MX, "ten mail.example.com"),
            (RecordType.MX, "-1 mail.example.com"),
            (RecordType.SRV, "10 5 https target.example.com"),
            (RecordType.SRV, "10 5 70000 target.example.com"),
        ],
    )
    def test_non_numeric_fields_are_invalid(self, record_type, content) -> None:
        """Test priority, weight and port must be numbers before anything is sent."""
        spec = RecordSpec(name="example.com", type=record_type, content=content)

        with pytest.raises(InvalidSpec):
            check_content(record_type, content)
        with pytest.raises(InvalidSpec):
            record_payload(spec)

    def test_mx_reassembled_on_read(self) -> None:
        """Test an MX read back compares equal to the content it was created from."""
        remote = remote_record(
            api_record(type="MX", name="example.com", content="mail.example.com", priority=10)
        )
        spec = RecordSpec(
            name="example.com", type=RecordType.MX, content="10 mail.example.com.", owner="default/www"
        )

        assert remote.content == "10 mail.example.com"
        assert remote.matches(spec)

    def test_matches_detects_drift(self) -> None:
        remote = remote_record(api_record(ttl=300))

        assert not remote.matches(SPEC)
        assert remote_record(api_record(proxied=True)).matches(SPEC) is False
        assert remote_record(api_record(tags=["a"])).matches(SPEC) is False

    def test_proxied_record_ttl_is_automatic(self) -> None:
        """Test a proxied record reported with ttl 1 matches a spec asking for 300."""
        remote = remote_record(api_record(proxied=True, ttl=1))
        spec = RecordSpec(
            name="www.example.com",
            type=RecordType.A,
            content="1.2.3.4",
            ttl=300,
            proxied=True,
            owner="default/www",
        )

        assert remote.matches(spec)
        assert record_payload(spec)["ttl"] == 1

    def test_txt_quotes_are_ignored(self) -> None:
        remote = remote_record(api_record(type="TXT", content='"v=spf1 -all"'))
        spec = RecordSpec(
            name="www.example.com", type=RecordType.TXT, content="v=spf1 -all", owner="default/www"
        )

        assert remote.matches(spec)
