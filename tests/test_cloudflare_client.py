"""Tests for core.cloudflare_client — API interactions with mocked responses."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from cfddns.core.cancel import Context
from cfddns.core.cloudflare_client import (
    CloudflareAPIError,
    CloudflareClient,
    _normalize_record,
)


def _mock_response(json_data, status_code=200, headers=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = json_data
    resp.headers = headers or {}
    return resp


@pytest.fixture
def session():
    with patch("cfddns.core.cloudflare_client.requests.Session") as mock_session_cls:
        mock_session = MagicMock()
        mock_session_cls.return_value = mock_session
        yield mock_session


class TestNormalizeRecord:
    def test_a_record(self):
        raw = {
            "id": "r1", "type": "A", "name": "example.com",
            "content": "1.2.3.4", "ttl": 300, "proxied": True,
        }
        rec = _normalize_record(raw)
        assert rec["id"] == "r1"
        assert rec["type"] == "A"
        assert rec["proxied"] is True
        assert rec["comment"] == ""

    def test_null_comment_becomes_empty(self):
        rec = _normalize_record({"id": "r1", "content": "::1", "comment": None})
        assert rec["comment"] == ""
        assert rec["ttl"] == 1


class TestCloudflareAPIError:
    def test_permission_by_status(self):
        assert CloudflareAPIError(403, []).is_permission_error

    def test_permission_by_code(self):
        assert CloudflareAPIError(400, [{"code": 10000, "message": "Authentication error"}]).is_permission_error

    def test_other_error(self):
        exc = CloudflareAPIError(400, [{"code": 1004, "message": "DNS Validation Error"}])
        assert not exc.is_permission_error
        assert "DNS Validation Error" in str(exc)


class TestCloudflareClient:
    def test_list_zones(self, session):
        session.request.return_value = _mock_response({
            "success": True,
            "result": [{"id": "z1", "name": "example.com", "status": "active"}],
            "result_info": {"total_pages": 1},
        })

        zones = CloudflareClient().list_zones("fake-token", "example.com", account_id="acc")
        assert zones == [{"id": "z1", "name": "example.com", "status": "active"}]
        params = session.request.call_args.kwargs["params"]
        assert params["name"] == "example.com"
        assert params["account.id"] == "acc"

    def test_list_records_paginates(self, session):
        session.request.side_effect = [
            _mock_response({
                "success": True,
                "result": [{"id": "r1", "type": "A", "name": "x.com", "content": "1.2.3.4"}],
                "result_info": {"total_pages": 2},
            }),
            _mock_response({
                "success": True,
                "result": [{"id": "r2", "type": "A", "name": "x.com", "content": "1.2.3.5"}],
                "result_info": {"total_pages": 2},
            }),
        ]

        records = CloudflareClient().list_records("fake-token", "z1", "x.com", "A")
        assert [r["id"] for r in records] == ["r1", "r2"]
        assert session.request.call_count == 2
        assert session.request.call_args.kwargs["params"]["type"] == "A"

    def test_update_record_content_patches_content_only(self, session):
        session.request.return_value = _mock_response({
            "success": True,
            "result": {"id": "r1", "type": "A", "name": "x.com", "content": "5.6.7.8"},
        })

        CloudflareClient().update_record_content("fake-token", "z1", "r1", "5.6.7.8")
        args, kwargs = session.request.call_args
        assert args[0] == "PATCH"
        assert args[1].endswith("/zones/z1/dns_records/r1")
        assert kwargs["json"] == {"content": "5.6.7.8"}

    def test_api_error_raised(self, session):
        session.request.return_value = _mock_response(
            {"success": False, "errors": [{"message": "Invalid token"}]},
            status_code=403,
        )

        with pytest.raises(CloudflareAPIError, match="Invalid token"):
            CloudflareClient().list_zones("bad-token", "example.com")

    def test_connection_error_not_retried(self, session):
        session.request.side_effect = requests.ConnectionError("boom")

        with pytest.raises(CloudflareAPIError) as exc_info:
            CloudflareClient().verify_token("fake-token")
        assert exc_info.value.status_code == 0
        assert session.request.call_count == 1

    def test_rate_limit_backs_off_then_succeeds(self, session):
        session.request.side_effect = [
            _mock_response({}, status_code=429, headers={"Retry-After": "2"}),
            _mock_response({"success": True, "result": {"status": "active"}}),
        ]
        ctx = MagicMock(spec=Context)
        ctx.remaining.return_value = None

        result = CloudflareClient().verify_token("fake-token", ctx=ctx)
        assert result == {"status": "active"}
        ctx.sleep.assert_called_once_with(2.0)

    def test_cancelled_context_refuses_request(self, session):
        ctx = Context.background()
        ctx.cancel()

        with pytest.raises(CloudflareAPIError):
            CloudflareClient().verify_token("fake-token", ctx=ctx)
        session.request.assert_not_called()


class TestListItems:
    def test_list_items_follows_cursor(self, session):
        session.request.side_effect = [
            _mock_response({
                "success": True,
                "result": [{"id": "i1", "ip": "10.0.0.1"}],
                "result_info": {"cursors": {"after": "c1"}},
            }),
            _mock_response({
                "success": True,
                "result": [{"id": "i2", "ip": "10.0.0.2"}],
                "result_info": {"cursors": {}},
            }),
        ]

        items = CloudflareClient().list_list_items("fake-token", "acc", "l1")
        assert [i["id"] for i in items] == ["i1", "i2"]
        assert session.request.call_args.kwargs["params"]["cursor"] == "c1"

    def test_create_items_waits_for_bulk_operation(self, session):
        session.request.side_effect = [
            _mock_response({"success": True, "result": {"operation_id": "op1"}}),
            _mock_response({"success": True, "result": {"status": "completed"}}),
            _mock_response({"success": True, "result": [{"id": "i1", "ip": "10.0.0.1"}]}),
        ]

        items = CloudflareClient().create_list_items("fake-token", "acc", "l1", ["10.0.0.1"], "ddns")
        assert items == [{"id": "i1", "ip": "10.0.0.1"}]
        post, poll, _ = session.request.call_args_list
        assert post.args[0] == "POST"
        assert post.kwargs["json"] == [{"ip": "10.0.0.1", "comment": "ddns"}]
        assert poll.args[1].endswith("/accounts/acc/rules/lists/bulk_operations/op1")

    def test_failed_bulk_operation_raises(self, session):
        session.request.side_effect = [
            _mock_response({"success": True, "result": {"operation_id": "op1"}}),
            _mock_response({"success": True, "result": {"status": "failed", "error": "bad item"}}),
        ]

        with pytest.raises(CloudflareAPIError, match="bad item"):
            CloudflareClient().delete_list_items("fake-token", "acc", "l1", ["i1"])

    def test_replace_async_does_not_poll(self, session):
        session.request.return_value = _mock_response({"success": True, "result": {"operation_id": "op9"}})

        op = CloudflareClient().replace_list_items_async("fake-token", "acc", "l1", [])
        assert op == "op9"
        assert session.request.call_count == 1
        assert session.request.call_args.args[0] == "PUT"
        assert session.request.call_args.kwargs["json"] == []
