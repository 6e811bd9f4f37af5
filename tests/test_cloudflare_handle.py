"""Tests for core.cloudflare_handle — zone resolution, records, IP lists and caching."""

import ipaddress
from unittest.mock import MagicMock

import pytest

from cfddns.core.cache import CacheKind, HandleCache
from cfddns.core.cancel import Context
from cfddns.core.cloudflare_client import CloudflareAPIError, CloudflareClient
from cfddns.core.cloudflare_handle import CloudflareHandle
from cfddns.core.domain import FQDN, Wildcard
from cfddns.core.handle import (
    AmbiguousWAFListError,
    AmbiguousZoneError,
    DeletionMode,
    InvalidRecordError,
    InvalidWAFListItemError,
    Record,
    RecordParams,
    WAFList,
    WAFListItem,
    WAFListNotFoundError,
    ZoneNotFoundError,
)
from cfddns.core.ipnet import IPFamily
from cfddns.core.setter import ResponseCode, Setter

IP1 = ipaddress.ip_address("198.51.100.1")
IP2 = ipaddress.ip_address("198.51.100.2")
DOMAIN = FQDN("www.example.org")
WLIST = WAFList("acc", "home")


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def client():
    return MagicMock(spec=CloudflareClient)


@pytest.fixture
def handle(client, clock):
    return CloudflareHandle("tok", client=client, cache=HandleCache(60, clock))


@pytest.fixture
def ctx():
    return Context.background()


def _zone(zone_id, status="active"):
    return {"id": zone_id, "name": "example.org", "status": status}


def _record(record_id, content, **extra):
    return {"id": record_id, "type": "A", "name": "www.example.org", "content": content,
            "ttl": 1, "proxied": False, "comment": "", **extra}


# ----------------------------------------------------------------------
# Zones
# ----------------------------------------------------------------------

class TestListZones:
    def test_empty_name_makes_no_call(self, handle, client, ctx):
        assert handle.list_zones(ctx, "") == []
        client.list_zones.assert_not_called()

    def test_status_filtering(self, handle, client, ctx):
        client.list_zones.return_value = [
            _zone("z1"), _zone("z2", "pending"), _zone("z3", "deleted"), _zone("z4", "weird"),
        ]
        assert handle.list_zones(ctx, "example.org") == ["z1", "z2", "z4"]

    def test_cached_by_name(self, handle, client, ctx):
        client.list_zones.return_value = [_zone("z1")]
        handle.list_zones(ctx, "example.org")
        handle.list_zones(ctx, "example.org")
        assert client.list_zones.call_count == 1

    def test_account_id_passed(self, client, clock, ctx):
        handle = CloudflareHandle("tok", "acc", client=client, cache=HandleCache(60, clock))
        client.list_zones.return_value = []
        handle.list_zones(ctx, "example.org")
        assert client.list_zones.call_args.kwargs["account_id"] == "acc"


class TestZoneOfDomain:
    def test_descends_to_first_matching_suffix(self, handle, client, ctx):
        client.list_zones.side_effect = lambda token, name, **kw: [_zone("z1")] if name == "example.org" else []

        assert handle.zone_of_domain(ctx, DOMAIN) == "z1"
        names = [c.args[1] for c in client.list_zones.call_args_list]
        assert names == ["www.example.org", "example.org"]

    def test_wildcard_never_queries_star(self, handle, client, ctx):
        client.list_zones.side_effect = lambda token, name, **kw: [_zone("z1")] if name == "example.org" else []

        assert handle.zone_of_domain(ctx, Wildcard("example.org")) == "z1"
        assert client.list_zones.call_args_list[0].args[1] == "example.org"

    def test_ambiguous_zone(self, handle, client, ctx):
        client.list_zones.side_effect = lambda token, name, **kw: (
            [_zone("z1"), _zone("z2")] if name == "example.org" else []
        )

        with pytest.raises(AmbiguousZoneError):
            handle.zone_of_domain(ctx, DOMAIN)
        assert handle.cache.get(CacheKind.ZONE_OF_DOMAIN, "www.example.org") is None

    def test_not_found(self, handle, client, ctx):
        client.list_zones.return_value = []
        with pytest.raises(ZoneNotFoundError):
            handle.zone_of_domain(ctx, DOMAIN)

    def test_result_cached_until_expiry(self, handle, client, clock, ctx):
        client.list_zones.return_value = [_zone("z1")]
        handle.zone_of_domain(ctx, DOMAIN)
        handle.zone_of_domain(ctx, DOMAIN)
        assert client.list_zones.call_count == 1

        clock.now = 61
        handle.zone_of_domain(ctx, DOMAIN)
        assert client.list_zones.call_count == 2

    def test_api_error_propagates(self, handle, client, ctx):
        client.list_zones.side_effect = CloudflareAPIError(403, [{"message": "denied"}])
        with pytest.raises(CloudflareAPIError):
            handle.zone_of_domain(ctx, DOMAIN)


# ----------------------------------------------------------------------
# DNS records
# ----------------------------------------------------------------------

@pytest.fixture
def zoned(handle):
    handle.cache.set(CacheKind.ZONE_OF_DOMAIN, DOMAIN.dns_name_ascii(), "z1")
    return handle


class TestListRecords:
    def test_live_then_cached(self, zoned, client, ctx):
        client.list_records.return_value = [_record("r1", "198.51.100.1", ttl=300, comment="c")]

        records, cached = zoned.list_records(ctx, IPFamily.IP4, DOMAIN)
        assert records == [Record("r1", IP1, RecordParams(ttl=300, proxied=False, comment="c"))]
        assert cached is False
        client.list_records.assert_called_once_with("tok", "z1", "www.example.org", "A", ctx=ctx)

        again, cached = zoned.list_records(ctx, IPFamily.IP4, DOMAIN)
        assert again == records
        assert cached is True
        assert client.list_records.call_count == 1

    def test_caller_cannot_corrupt_cache(self, zoned, client, ctx):
        client.list_records.return_value = [_record("r1", "198.51.100.1")]
        records, _ = zoned.list_records(ctx, IPFamily.IP4, DOMAIN)
        records.clear()
        again, _ = zoned.list_records(ctx, IPFamily.IP4, DOMAIN)
        assert len(again) == 1

    def test_invalid_content(self, zoned, client, ctx):
        client.list_records.return_value = [_record("r1", "not-an-ip")]
        with pytest.raises(InvalidRecordError):
            zoned.list_records(ctx, IPFamily.IP4, DOMAIN)


class TestRecordMutations:
    @pytest.fixture
    def cached_records(self, zoned, client, ctx):
        client.list_records.return_value = [_record("r1", "198.51.100.1")]
        zoned.list_records(ctx, IPFamily.IP4, DOMAIN)
        return zoned

    def _cached(self, handle):
        return handle.cache.get(CacheKind.RECORDS, ("www.example.org", IPFamily.IP4))

    def test_create_prepends(self, cached_records, client, ctx):
        client.create_record.return_value = {"id": "r2"}
        params = RecordParams(ttl=300, proxied=True, comment="ddns")

        assert cached_records.create_record(ctx, IPFamily.IP4, DOMAIN, IP2, params) == "r2"
        assert [r.id for r in self._cached(cached_records)] == ["r2", "r1"]
        payload = client.create_record.call_args.args[2]
        assert payload == {"type": "A", "name": "www.example.org", "content": "198.51.100.2",
                           "ttl": 300, "proxied": True, "comment": "ddns"}

    def test_create_failure_invalidates(self, cached_records, client, ctx):
        client.create_record.side_effect = CloudflareAPIError(400, [])
        with pytest.raises(CloudflareAPIError):
            cached_records.create_record(ctx, IPFamily.IP4, DOMAIN, IP2, RecordParams())
        assert self._cached(cached_records) is None

    def test_update_replaces_ip(self, cached_records, client, ctx):
        cached_records.update_record(
            ctx, IPFamily.IP4, DOMAIN, "r1", IP2, current=RecordParams(), expected=RecordParams()
        )
        client.update_record_content.assert_called_once_with("tok", "z1", "r1", "198.51.100.2", ctx=ctx)
        assert self._cached(cached_records)[0].ip == IP2

    def test_update_warns_on_mismatch_without_correcting(self, cached_records, client, ctx, caplog):
        cached_records.update_record(
            ctx, IPFamily.IP4, DOMAIN, "r1", IP2,
            current=RecordParams(ttl=1), expected=RecordParams(ttl=300, proxied=True),
        )
        assert "TTL" in caplog.text
        assert "proxied" in caplog.text
        client.update_record_content.assert_called_once()

    def test_update_failure_invalidates(self, cached_records, client, ctx):
        client.update_record_content.side_effect = CloudflareAPIError(500, [])
        with pytest.raises(CloudflareAPIError):
            cached_records.update_record(
                ctx, IPFamily.IP4, DOMAIN, "r1", IP2, current=RecordParams(), expected=RecordParams()
            )
        assert self._cached(cached_records) is None

    def test_delete_removes_entry(self, cached_records, client, ctx):
        cached_records.delete_record(ctx, IPFamily.IP4, DOMAIN, "r1")
        assert self._cached(cached_records) == []

    def test_delete_failure_invalidates(self, cached_records, client, ctx):
        client.delete_record.side_effect = CloudflareAPIError(500, [])
        with pytest.raises(CloudflareAPIError):
            cached_records.delete_record(ctx, IPFamily.IP4, DOMAIN, "r1")
        assert self._cached(cached_records) is None

    def test_final_delete_failure_keeps_cache(self, cached_records, client, ctx):
        client.delete_record.side_effect = CloudflareAPIError(500, [])
        with pytest.raises(CloudflareAPIError):
            cached_records.delete_record(ctx, IPFamily.IP4, DOMAIN, "r1", DeletionMode.FINAL)
        assert [r.id for r in self._cached(cached_records)] == ["r1"]


# ----------------------------------------------------------------------
# IP lists
# ----------------------------------------------------------------------

def _list(list_id, name="home", description="", kind="ip"):
    return {"id": list_id, "name": name, "description": description, "kind": kind}


class TestWAFListLookup:
    def test_only_ip_lists_visible(self, handle, client, ctx):
        client.list_lists.return_value = [_list("l1"), _list("l2", name="hosts", kind="hostname")]
        metas = handle.list_waf_lists(ctx, "acc")
        assert [m.id for m in metas] == ["l1"]

    def test_found(self, handle, client, ctx):
        client.list_lists.return_value = [_list("l0", name="other"), _list("l1")]
        assert handle.waf_list_id(ctx, WLIST, "") == "l1"
        assert handle.cache.get(CacheKind.LIST_ID, WLIST) == "l1"

    def test_missing(self, handle, client, ctx):
        client.list_lists.return_value = []
        assert handle.waf_list_id(ctx, WLIST, "") is None
        with pytest.raises(WAFListNotFoundError):
            handle.find_waf_list(ctx, WLIST, "")

    def test_ambiguous(self, handle, client, ctx):
        client.list_lists.return_value = [_list("l1"), _list("l2")]
        with pytest.raises(AmbiguousWAFListError):
            handle.waf_list_id(ctx, WLIST, "")

    def test_description_mismatch_only_warns(self, handle, client, ctx, caplog):
        client.list_lists.return_value = [_list("l1", description="old")]
        assert handle.waf_list_id(ctx, WLIST, "new") == "l1"
        assert "description" in caplog.text
        client.create_list.assert_not_called()


class TestWAFListItems:
    def test_existing_list(self, handle, client, ctx):
        client.list_lists.return_value = [_list("l1")]
        client.list_list_items.return_value = [{"id": "i1", "ip": "10.0.0.0/16"}]

        items, existed, cached = handle.list_waf_list_items(ctx, WLIST, "")
        assert items == [WAFListItem("i1", ipaddress.ip_network("10.0.0.0/16"))]
        assert (existed, cached) == (True, False)

        _, existed, cached = handle.list_waf_list_items(ctx, WLIST, "")
        assert (existed, cached) == (True, True)
        assert client.list_list_items.call_count == 1

    def test_missing_list_created(self, handle, client, ctx):
        client.list_lists.return_value = [_list("l0", name="other")]
        client.create_list.return_value = {"id": "l1", "name": "home"}

        items, existed, cached = handle.list_waf_list_items(ctx, WLIST, "managed")
        assert (items, existed, cached) == ([], False, False)
        client.create_list.assert_called_once_with("tok", "acc", "home", "managed", ctx=ctx)
        assert handle.cache.get(CacheKind.LIST_ID, WLIST) == "l1"
        assert [m.id for m in handle.cache.get(CacheKind.LISTS, "acc")] == ["l1", "l0"]
        assert handle.cache.get(CacheKind.LIST_ITEMS, WLIST) == []

    def test_create_list_failure_invalidates_metas(self, handle, client, ctx):
        client.list_lists.return_value = []
        client.create_list.side_effect = CloudflareAPIError(403, [])
        with pytest.raises(CloudflareAPIError):
            handle.list_waf_list_items(ctx, WLIST, "")
        assert handle.cache.get(CacheKind.LISTS, "acc") is None

    def test_items_failure_forgets_list(self, handle, client, ctx):
        client.list_lists.return_value = [_list("l1")]
        client.list_list_items.side_effect = CloudflareAPIError(404, [{"message": "not found"}])

        with pytest.raises(CloudflareAPIError):
            handle.list_waf_list_items(ctx, WLIST, "")
        assert handle.cache.get(CacheKind.LIST_ID, WLIST) is None
        assert handle.cache.get(CacheKind.LISTS, "acc") is None

    def test_non_ip_item_rejected(self, handle, client, ctx):
        client.list_lists.return_value = [_list("l1")]
        client.list_list_items.return_value = [{"id": "i1", "hostname": {"url_hostname": "x"}}]
        with pytest.raises(InvalidWAFListItemError):
            handle.list_waf_list_items(ctx, WLIST, "")

    def test_create_items_replaces_cache(self, handle, client, ctx):
        handle.cache.set(CacheKind.LIST_ID, WLIST, "l1")
        client.create_list_items.return_value = [{"id": "i9", "ip": "10.0.0.1"}]

        handle.create_waf_list_items(ctx, WLIST, "", [ipaddress.ip_network("10.0.0.1/32")], "ddns")
        client.create_list_items.assert_called_once_with("tok", "acc", "l1", ["10.0.0.1"], "ddns", ctx=ctx)
        assert handle.cache.get(CacheKind.LIST_ITEMS, WLIST) == [
            WAFListItem("i9", ipaddress.ip_network("10.0.0.1/32"))
        ]

    def test_empty_mutations_make_no_call(self, handle, client, ctx):
        handle.create_waf_list_items(ctx, WLIST, "", [], "")
        handle.delete_waf_list_items(ctx, WLIST, "", [])
        client.create_list_items.assert_not_called()
        client.delete_list_items.assert_not_called()
        client.list_lists.assert_not_called()

    def test_delete_items_failure_invalidates(self, handle, client, ctx):
        handle.cache.set(CacheKind.LIST_ID, WLIST, "l1")
        handle.cache.set(CacheKind.LIST_ITEMS, WLIST, [])
        client.delete_list_items.side_effect = CloudflareAPIError(500, [])
        with pytest.raises(CloudflareAPIError):
            handle.delete_waf_list_items(ctx, WLIST, "", ["i1"])
        assert handle.cache.get(CacheKind.LIST_ITEMS, WLIST) is None


class TestFinalClear:
    @pytest.fixture
    def primed(self, handle, client, ctx):
        client.list_lists.return_value = [_list("l1"), _list("l0", name="other")]
        client.list_list_items.return_value = []
        handle.list_waf_list_items(ctx, WLIST, "")
        return handle

    def test_deleted(self, primed, client, ctx):
        assert primed.final_clear_waf_list(ctx, WLIST, "") == (True, True)
        client.delete_list.assert_called_once_with("tok", "acc", "l1", ctx=ctx)
        assert primed.cache.get(CacheKind.LIST_ITEMS, WLIST) is None
        assert primed.cache.get(CacheKind.LIST_ID, WLIST) is None
        assert [m.id for m in primed.cache.get(CacheKind.LISTS, "acc")] == ["l0"]

    def test_deleted_list_recreated_by_next_update(self, primed, client, ctx):
        primed.final_clear_waf_list(ctx, WLIST, "")
        client.create_list.return_value = {"id": "l2", "name": "home"}
        client.create_list_items.return_value = [{"id": "i1", "ip": "10.0.0.1"}]

        code = Setter(primed).set_waf_list(ctx, WLIST, "", {IPFamily.IP4: ipaddress.ip_address("10.0.0.1")}, "")
        assert code is ResponseCode.UPDATED
        client.create_list.assert_called_once_with("tok", "acc", "home", "", ctx=ctx)
        assert client.create_list_items.call_args.args[2] == "l2"
        assert client.list_lists.call_count == 1

    def test_falls_back_to_async_clear(self, primed, client, ctx):
        client.delete_list.side_effect = CloudflareAPIError(409, [{"message": "in use"}])
        assert primed.final_clear_waf_list(ctx, WLIST, "") == (False, True)
        client.replace_list_items_async.assert_called_once_with("tok", "acc", "l1", [], ctx=ctx)
        assert primed.cache.get(CacheKind.LIST_ITEMS, WLIST) is None

    def test_both_fail(self, primed, client, ctx):
        client.delete_list.side_effect = CloudflareAPIError(409, [])
        client.replace_list_items_async.side_effect = CloudflareAPIError(500, [])
        assert primed.final_clear_waf_list(ctx, WLIST, "") == (False, False)

    def test_missing_list(self, handle, client, ctx):
        client.list_lists.return_value = []
        assert handle.final_clear_waf_list(ctx, WLIST, "") == (False, False)
        client.delete_list.assert_not_called()


class TestVerifyToken:
    def test_active(self, handle, client, ctx):
        client.verify_token.return_value = {"status": "active"}
        assert handle.verify_token(ctx) is True

    def test_inactive(self, handle, client, ctx):
        client.verify_token.return_value = {"status": "disabled"}
        assert handle.verify_token(ctx) is False

    def test_error(self, handle, client, ctx):
        client.verify_token.side_effect = CloudflareAPIError(401, [])
        assert handle.verify_token(ctx) is False
