"""Unit tests for the Cloudflare tunnel configuration and DNS record stores."""

from typing import Any, Dict, Optional
from unittest.mock import MagicMock, patch

import pytest
import requests

from tunnel_ingress.cli import (
    CloudflareDNSRecordStore,
    CloudflareTunnelConfigStore,
    DnsCreateError,
    DnsDeleteError,
    DnsQueryError,
    DnsRecord,
    IngressRule,
    IngressTable,
    RemoteReadError,
    RemoteWriteError,
)

API = "https://api.cloudflare.test/client/v4"
CONFIG_URL = f"{API}/accounts/acct/cfd_tunnel/tun/configurations"
DNS_URL = f"{API}/zones/zone/dns_records"

# =============================================================================
# Test Helpers
# =============================================================================


def make_response(
    json_data: Any = None,
    status_code: int = 200,
    headers: Optional[Dict[str, str]] = None,
) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.headers = headers or {}
    response.json.return_value = json_data
    response.text = "" if json_data is None else str(json_data)
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(
            f"{status_code} Error", response=response
        )
    else:
        response.raise_for_status = MagicMock()
    return response


def tunnel_store() -> CloudflareTunnelConfigStore:
    return CloudflareTunnelConfigStore(API + "/", "acct", "tun", "secret-token", timeout_seconds=3)


def dns_store() -> CloudflareDNSRecordStore:
    return CloudflareDNSRecordStore(API, "zone", "secret-token", timeout_seconds=3)


def config_payload(ingress: Any, warp_routing: Any = None, version: Any = 7) -> Dict[str, Any]:
    config: Dict[str, Any] = {"ingress": ingress}
    if warp_routing is not None:
        config["warp-routing"] = warp_routing
    return {"success": True, "result": {"tunnel_id": "tun", "version": version, "config": config}}


# =============================================================================
# Tunnel Configuration Store
# =============================================================================


class TestTunnelConfigFetch:
    def test_session_uses_bearer_token(self) -> None:
        store = tunnel_store()
        assert store._session.headers["Authorization"] == "Bearer secret-token"

    def test_fetch_table_parses_rules(self) -> None:
        store = tunnel_store()
        payload = config_payload(
            [
                {
                    "hostname": "a.ex.com",
                    "service": "https://traefik:443",
                    "originRequest": {"noTLSVerify": True},
                    "path": "/api",
                },
                {"service": "http_status:404"},
            ],
            warp_routing={"enabled": True},
        )

        with patch.object(store._session, "get") as mock_get:
            mock_get.return_value = make_response(payload)

            table = store.fetch_table()

            mock_get.assert_called_once_with(CONFIG_URL, timeout=3)

        assert table.rules == (
            IngressRule(
                service="https://traefik:443",
                hostname="a.ex.com",
                origin_request={"noTLSVerify": True},
                extra={"path": "/api"},
            ),
            IngressRule(service="http_status:404"),
        )
        assert table.warp_routing == {"enabled": True}
        assert table.version == "7"

    def test_fetch_table_round_trips_unknown_keys(self) -> None:
        store = tunnel_store()
        ingress = [
            {"hostname": "a.ex.com", "service": "http://a:80", "path": "/x"},
            {"service": "http_status:404"},
        ]
        with patch.object(store._session, "get") as mock_get:
            mock_get.return_value = make_response(config_payload(ingress))
            table = store.fetch_table()

        assert table.to_config() == {"ingress": ingress, "warp-routing": {}}

    def test_fetch_table_prefers_etag_as_version(self) -> None:
        store = tunnel_store()
        with patch.object(store._session, "get") as mock_get:
            mock_get.return_value = make_response(config_payload([]), headers={"ETag": '"abc"'})
            table = store.fetch_table()

        assert table.version == '"abc"'

    def test_missing_result_config_raises_read_error(self) -> None:
        store = tunnel_store()
        with patch.object(store._session, "get") as mock_get:
            mock_get.return_value = make_response({"success": True, "result": {"tunnel_id": "tun"}})

            with pytest.raises(RemoteReadError, match="result.config"):
                store.fetch_table()

    def test_null_result_raises_read_error(self) -> None:
        store = tunnel_store()
        with patch.object(store._session, "get") as mock_get:
            mock_get.return_value = make_response({"success": True, "result": None})

            with pytest.raises(RemoteReadError):
                store.fetch_table()

    def test_non_list_ingress_raises_read_error(self) -> None:
        store = tunnel_store()
        with patch.object(store._session, "get") as mock_get:
            mock_get.return_value = make_response(config_payload({"hostname": "a"}))

            with pytest.raises(RemoteReadError, match="expected list"):
                store.fetch_table()

    def test_missing_ingress_is_empty_table(self) -> None:
        store = tunnel_store()
        payload = {"success": True, "result": {"config": {"warp-routing": {"enabled": False}}}}
        with patch.object(store._session, "get") as mock_get:
            mock_get.return_value = make_response(payload)
            table = store.fetch_table()

        assert table.rules == ()
        assert table.warp_routing == {"enabled": False}

    def test_http_error_carries_status_and_body(self) -> None:
        store = tunnel_store()
        body = {"success": False, "errors": [{"code": 10000, "message": "Authentication error"}]}
        with patch.object(store._session, "get") as mock_get:
            mock_get.return_value = make_response(body, status_code=403)

            with pytest.raises(RemoteReadError) as exc_info:
                store.fetch_table()

        assert exc_info.value.status_code == 403
        assert exc_info.value.body == body
        assert "status=403" in exc_info.value.describe()

    def test_timeout_raises_read_error(self) -> None:
        store = tunnel_store()
        with patch.object(store._session, "get") as mock_get:
            mock_get.side_effect = requests.exceptions.Timeout("read timed out")

            with pytest.raises(RemoteReadError, match="timed out"):
                store.fetch_table()

    def test_invalid_json_raises_read_error(self) -> None:
        store = tunnel_store()
        response = make_response()
        response.json.side_effect = ValueError("No JSON")
        response.text = "<html>bad gateway</html>"
        with patch.object(store._session, "get") as mock_get:
            mock_get.return_value = response

            with pytest.raises(RemoteReadError) as exc_info:
                store.fetch_table()

        assert exc_info.value.body == "<html>bad gateway</html>"

    def test_unsuccessful_envelope_raises_read_error(self) -> None:
        store = tunnel_store()
        with patch.object(store._session, "get") as mock_get:
            mock_get.return_value = make_response(
                {"success": False, "errors": [{"message": "nope"}], "result": None}
            )

            with pytest.raises(RemoteReadError) as exc_info:
                store.fetch_table()

        assert exc_info.value.body == [{"message": "nope"}]


class TestTunnelConfigWrite:
    def test_write_table_puts_full_document(self) -> None:
        store = tunnel_store()
        table = IngressTable(
            rules=(
                IngressRule(
                    service="https://traefik:443",
                    hostname="a.ex.com",
                    origin_request={"noTLSVerify": False},
                ),
                IngressRule(service="https://traefik:443"),
            ),
            warp_routing={"enabled": True},
            version="7",
        )

        with patch.object(store._session, "put") as mock_put:
            mock_put.return_value = make_response({"success": True, "result": {}})

            store.write_table(table)

            mock_put.assert_called_once_with(
                CONFIG_URL,
                json={
                    "config": {
                        "ingress": [
                            {
                                "hostname": "a.ex.com",
                                "service": "https://traefik:443",
                                "originRequest": {"noTLSVerify": False},
                            },
                            {"service": "https://traefik:443"},
                        ],
                        "warp-routing": {"enabled": True},
                    }
                },
                headers={},
                timeout=3,
            )

    def test_write_table_sends_if_match_for_etag(self) -> None:
        store = tunnel_store()
        table = IngressTable(rules=(), version='"etag-1"')

        with patch.object(store._session, "put") as mock_put:
            mock_put.return_value = make_response({"success": True, "result": {}})
            store.write_table(table)

        assert mock_put.call_args.kwargs["headers"] == {"If-Match": '"etag-1"'}

    def test_write_table_omits_if_match_for_weak_etag(self) -> None:
        store = tunnel_store()
        table = IngressTable(rules=(), version='W/"etag-1"')

        with patch.object(store._session, "put") as mock_put:
            mock_put.return_value = make_response({"success": True, "result": {}})
            store.write_table(table)

        assert mock_put.call_args.kwargs["headers"] == {}

    def test_write_failure_raises_write_error(self) -> None:
        store = tunnel_store()
        with patch.object(store._session, "put") as mock_put:
            mock_put.return_value = make_response({"success": False}, status_code=500)

            with pytest.raises(RemoteWriteError) as exc_info:
                store.write_table(IngressTable())

        assert exc_info.value.status_code == 500

    def test_write_connection_error_raises_write_error(self) -> None:
        store = tunnel_store()
        with patch.object(store._session, "put") as mock_put:
            mock_put.side_effect = requests.exceptions.ConnectionError("refused")

            with pytest.raises(RemoteWriteError):
                store.write_table(IngressTable())


# =============================================================================
# DNS Record Store
# =============================================================================


class TestDNSRecordStore:
    def test_find_records_queries_by_type_and_name(self) -> None:
        store = dns_store()
        payload = {
            "success": True,
            "result": [
                {
                    "id": "rec1",
                    "type": "CNAME",
                    "name": "a.ex.com",
                    "content": "tun.cfargotunnel.com",
                    "proxied": True,
                },
                {"type": "CNAME", "name": "broken.ex.com"},
            ],
        }
        with patch.object(store._session, "get") as mock_get:
            mock_get.return_value = make_response(payload)

            records = store.find_records("a.ex.com")

            mock_get.assert_called_once_with(
                DNS_URL, params={"type": "CNAME", "name": "a.ex.com"}, timeout=3
            )

        assert records == [
            DnsRecord(
                id="rec1",
                type="CNAME",
                name="a.ex.com",
                content="tun.cfargotunnel.com",
                proxied=True,
            )
        ]

    def test_find_records_failure_raises_query_error(self) -> None:
        store = dns_store()
        with patch.object(store._session, "get") as mock_get:
            mock_get.side_effect = requests.exceptions.ConnectionError("refused")

            with pytest.raises(DnsQueryError):
                store.find_records("a.ex.com")

    def test_find_records_non_list_result_raises_query_error(self) -> None:
        store = dns_store()
        with patch.object(store._session, "get") as mock_get:
            mock_get.return_value = make_response({"success": True, "result": {"id": "x"}})

            with pytest.raises(DnsQueryError):
                store.find_records("a.ex.com")

    def test_create_record_posts_cname(self) -> None:
        store = dns_store()
        payload = {
            "success": True,
            "result": {
                "id": "new1",
                "type": "CNAME",
                "name": "b.ex.com",
                "content": "tun.cfargotunnel.com",
                "proxied": False,
            },
        }
        with patch.object(store._session, "post") as mock_post:
            mock_post.return_value = make_response(payload)

            record = store.create_record("b.ex.com", "tun.cfargotunnel.com", False)

            mock_post.assert_called_once_with(
                DNS_URL,
                json={
                    "type": "CNAME",
                    "name": "b.ex.com",
                    "content": "tun.cfargotunnel.com",
                    "proxied": False,
                },
                timeout=3,
            )

        assert record.id == "new1"

    def test_create_record_conflict_raises_create_error(self) -> None:
        store = dns_store()
        body = {"success": False, "errors": [{"code": 81053, "message": "record already exists"}]}
        with patch.object(store._session, "post") as mock_post:
            mock_post.return_value = make_response(body, status_code=400)

            with pytest.raises(DnsCreateError) as exc_info:
                store.create_record("b.ex.com", "tun.cfargotunnel.com", True)

        assert exc_info.value.status_code == 400
        assert exc_info.value.body == body

    def test_delete_record_by_id(self) -> None:
        store = dns_store()
        with patch.object(store._session, "delete") as mock_delete:
            mock_delete.return_value = make_response({"success": True, "result": {"id": "rec1"}})

            store.delete_record("rec1")

            mock_delete.assert_called_once_with(f"{DNS_URL}/rec1", timeout=3)

    def test_delete_record_failure_raises_delete_error(self) -> None:
        store = dns_store()
        with patch.object(store._session, "delete") as mock_delete:
            mock_delete.return_value = make_response({"success": False}, status_code=404)

            with pytest.raises(DnsDeleteError):
                store.delete_record("rec1")
