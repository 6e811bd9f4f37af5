"""Cloudflare handle — zone resolution, records and IP lists behind a TTL cache."""

from __future__ import annotations

import logging
from typing import Sequence

from cfddns.config import DEFAULT_CACHE_EXPIRATION
from cfddns.core.cache import CacheKind, HandleCache
from cfddns.core.cancel import Context
from cfddns.core.cloudflare_client import CloudflareAPIError, CloudflareClient
from cfddns.core.domain import Domain
from cfddns.core.handle import (
    AmbiguousWAFListError,
    AmbiguousZoneError,
    DeletionMode,
    Handle,
    InvalidRecordError,
    InvalidWAFListItemError,
    ListID,
    Record,
    RecordID,
    RecordParams,
    WAFList,
    WAFListItem,
    WAFListMeta,
    WAFListNotFoundError,
    ZoneID,
    ZoneNotFoundError,
    describe_ttl,
)
from cfddns.core.ipnet import IPAddress, IPFamily, IPPrefix, describe_prefix_or_ip, parse_ip, parse_prefix_or_ip

logger = logging.getLogger(__name__)

# Zone statuses that still allow record management, but hint at an unfinished setup
_INCOMPLETE_ZONE_STATUSES = {"deactivated", "initializing", "moved", "pending"}


def _hint_record_permission(exc: CloudflareAPIError) -> None:
    if exc.is_permission_error:
        logger.warning('Double check your API token. Make sure you granted the "Edit" permission of "Zone - DNS"')


def _hint_list_permission(exc: CloudflareAPIError) -> None:
    if exc.is_permission_error:
        logger.warning(
            "Double check your API token and account ID. "
            'Make sure you granted the "Edit" permission of "Account - Account Filter Lists"'
        )


class CloudflareHandle(Handle):
    """:class:`Handle` backed by :class:`CloudflareClient`.

    Reads go through a :class:`HandleCache` owned by this instance. After a
    mutation the cache is patched to the new truth when it is cheap to derive,
    and invalidated otherwise.
    """

    def __init__(
        self,
        token: str,
        account_id: str = "",
        *,
        client: CloudflareClient | None = None,
        cache: HandleCache | None = None,
        cache_expiration: float = DEFAULT_CACHE_EXPIRATION,
    ) -> None:
        self._cf = client or CloudflareClient()
        self._token = token
        self._account_id = account_id
        self.cache = cache or HandleCache(cache_expiration)

    def flush_cache(self) -> None:
        self.cache.flush()

    # ------------------------------------------------------------------
    # Token verification
    # ------------------------------------------------------------------

    def verify_token(self, ctx: Context) -> bool:
        """Check that the token is usable. Returns ``True`` when it is active."""
        try:
            result = self._cf.verify_token(self._token, ctx=ctx)
        except CloudflareAPIError as exc:
            logger.error("The Cloudflare API token could not be verified: %s", exc)
            return False
        status = result.get("status", "")
        if status != "active":
            logger.error("The Cloudflare API token is %s", status or "in an unknown state")
            return False
        if result.get("expires_on"):
            logger.warning("The token will expire at %s", result["expires_on"])
        return True

    # ------------------------------------------------------------------
    # Zones
    # ------------------------------------------------------------------

    def list_zones(self, ctx: Context, name: str) -> list[ZoneID]:
        """Return IDs of usable zones named *name*."""
        # The root zone is never managed by Cloudflare.
        if not name:
            return []

        cached = self.cache.get(CacheKind.ZONES, name)
        if cached is not None:
            return list(cached)

        try:
            raw = self._cf.list_zones(self._token, name, account_id=self._account_id, ctx=ctx)
        except CloudflareAPIError as exc:
            logger.warning("Failed to check the existence of a zone named %r: %s", name, exc)
            _hint_record_permission(exc)
            raise

        ids: list[ZoneID] = []
        for zone in raw:
            status = zone["status"]
            if status == "active":
                ids.append(zone["id"])
            elif status in _INCOMPLETE_ZONE_STATUSES:
                logger.warning(
                    "Zone %r is %r; your Cloudflare setup is incomplete; some features might not work as expected",
                    name, status,
                )
                ids.append(zone["id"])
            elif status == "deleted":
                logger.info("Zone %r is %r and thus skipped", name, status)
            else:
                logger.warning("Zone %r is in an undocumented status %r", name, status)
                ids.append(zone["id"])

        self.cache.set(CacheKind.ZONES, name, ids)
        return list(ids)

    def zone_of_domain(self, ctx: Context, domain: Domain) -> ZoneID:
        """Find the one zone governing *domain* by walking its suffixes.

        Raises ``AmbiguousZoneError`` when a suffix matches several zones and
        ``ZoneNotFoundError`` when no suffix matches any.
        """
        key = domain.dns_name_ascii()
        cached = self.cache.get(CacheKind.ZONE_OF_DOMAIN, key)
        if cached is not None:
            return cached

        for zone_name in domain.zones():
            zones = self.list_zones(ctx, zone_name)
            if not zones:
                continue
            if len(zones) > 1:
                logger.warning(
                    "Found multiple active zones named %r (IDs: %s); specifying CF_ACCOUNT_ID might help",
                    zone_name, ", ".join(zones),
                )
                raise AmbiguousZoneError(f"multiple zones named {zone_name!r}: {', '.join(zones)}")
            self.cache.set(CacheKind.ZONE_OF_DOMAIN, key, zones[0])
            return zones[0]

        logger.warning("Failed to find the zone of %r", domain.describe())
        raise ZoneNotFoundError(f"no zone found for {domain.describe()!r}")

    # ------------------------------------------------------------------
    # DNS records
    # ------------------------------------------------------------------

    def list_records(self, ctx: Context, family: IPFamily, domain: Domain) -> tuple[list[Record], bool]:
        key = (domain.dns_name_ascii(), family)
        cached = self.cache.get(CacheKind.RECORDS, key)
        if cached is not None:
            return list(cached), True

        zone_id = self.zone_of_domain(ctx, domain)
        try:
            raw = self._cf.list_records(
                self._token, zone_id, domain.dns_name_ascii(), family.record_type, ctx=ctx
            )
        except CloudflareAPIError as exc:
            logger.warning("Failed to retrieve %s records of %r: %s", family.record_type, domain.describe(), exc)
            _hint_record_permission(exc)
            raise

        records: list[Record] = []
        for r in raw:
            try:
                ip = parse_ip(r["content"])
            except ValueError as exc:
                logger.warning(
                    "Failed to parse the IP address in an %s record of %r (ID: %s): %s",
                    family.record_type, domain.describe(), r["id"], exc,
                )
                raise InvalidRecordError(f"record {r['id']} holds {r['content']!r}") from exc
            records.append(Record(
                id=r["id"],
                ip=ip,
                params=RecordParams(ttl=r["ttl"], proxied=r["proxied"], comment=r["comment"]),
            ))

        self.cache.set(CacheKind.RECORDS, key, records)
        return list(records), False

    def create_record(
        self, ctx: Context, family: IPFamily, domain: Domain, ip: IPAddress, params: RecordParams,
    ) -> RecordID:
        key = (domain.dns_name_ascii(), family)
        zone_id = self.zone_of_domain(ctx, domain)
        try:
            raw = self._cf.create_record(
                self._token,
                zone_id,
                {
                    "type": family.record_type,
                    "name": domain.dns_name_ascii(),
                    "content": str(ip),
                    "ttl": params.ttl,
                    "proxied": params.proxied,
                    "comment": params.comment,
                },
                ctx=ctx,
            )
        except CloudflareAPIError as exc:
            logger.warning("Failed to add a new %s record of %r: %s", family.record_type, domain.describe(), exc)
            _hint_record_permission(exc)
            self.cache.invalidate(CacheKind.RECORDS, key)
            raise

        record = Record(id=raw["id"], ip=ip, params=params)
        self.cache.update(CacheKind.RECORDS, key, lambda rs: [record, *rs])
        return record.id

    def update_record(
        self,
        ctx: Context,
        family: IPFamily,
        domain: Domain,
        record_id: RecordID,
        ip: IPAddress,
        current: RecordParams,
        expected: RecordParams,
    ) -> None:
        key = (domain.dns_name_ascii(), family)
        zone_id = self.zone_of_domain(ctx, domain)
        try:
            self._cf.update_record_content(self._token, zone_id, record_id, str(ip), ctx=ctx)
        except CloudflareAPIError as exc:
            logger.warning(
                "Failed to update a stale %s record of %r (ID: %s): %s",
                family.record_type, domain.describe(), record_id, exc,
            )
            _hint_record_permission(exc)
            self.cache.invalidate(CacheKind.RECORDS, key)
            raise

        _warn_mismatched_params(family, domain, record_id, current, expected)
        self.cache.update(
            CacheKind.RECORDS,
            key,
            lambda rs: [Record(id=r.id, ip=ip, params=r.params) if r.id == record_id else r for r in rs],
        )

    def delete_record(
        self,
        ctx: Context,
        family: IPFamily,
        domain: Domain,
        record_id: RecordID,
        mode: DeletionMode = DeletionMode.REGULAR,
    ) -> None:
        key = (domain.dns_name_ascii(), family)
        zone_id = self.zone_of_domain(ctx, domain)
        try:
            self._cf.delete_record(self._token, zone_id, record_id, ctx=ctx)
        except CloudflareAPIError as exc:
            logger.warning(
                "Failed to delete a stale %s record of %r (ID: %s): %s",
                family.record_type, domain.describe(), record_id, exc,
            )
            _hint_record_permission(exc)
            if mode is not DeletionMode.FINAL:
                self.cache.invalidate(CacheKind.RECORDS, key)
            raise

        self.cache.update(CacheKind.RECORDS, key, lambda rs: [r for r in rs if r.id != record_id])

    # ------------------------------------------------------------------
    # IP lists
    # ------------------------------------------------------------------

    def list_waf_lists(self, ctx: Context, account_id: str) -> list[WAFListMeta]:
        """Return the IP lists of an account; lists of other kinds are ignored."""
        cached = self.cache.get(CacheKind.LISTS, account_id)
        if cached is not None:
            return list(cached)

        try:
            raw = self._cf.list_lists(self._token, account_id, ctx=ctx)
        except CloudflareAPIError as exc:
            logger.warning("Failed to list existing lists: %s", exc)
            _hint_list_permission(exc)
            raise

        metas = [
            WAFListMeta(id=r["id"], name=r["name"], description=r["description"])
            for r in raw
            if r["kind"] == "ip"
        ]
        self.cache.set(CacheKind.LISTS, account_id, metas)
        return list(metas)

    def waf_list_id(self, ctx: Context, wlist: WAFList, expected_description: str) -> ListID | None:
        """Return the ID of *wlist*, or ``None`` when it does not exist."""
        cached = self.cache.get(CacheKind.LIST_ID, wlist)
        if cached is not None:
            return cached

        found: ListID | None = None
        for meta in self.list_waf_lists(ctx, wlist.account_id):
            if meta.name != wlist.name:
                continue
            if found is not None:
                logger.warning(
                    "Found multiple lists named %r within the account %s (IDs: %s and %s)",
                    wlist.name, wlist.account_id, found, meta.id,
                )
                raise AmbiguousWAFListError(f"multiple lists named {wlist.describe()}")
            if meta.description != expected_description:
                logger.warning(
                    "The description for the list %s (ID: %s) is %r, but it is expected to be %r; "
                    "change one of them to silence this warning",
                    wlist.describe(), meta.id, meta.description, expected_description,
                )
            found = meta.id

        if found is not None:
            self.cache.set(CacheKind.LIST_ID, wlist, found)
        return found

    def find_waf_list(self, ctx: Context, wlist: WAFList, expected_description: str) -> ListID:
        """Like :meth:`waf_list_id` but raises ``WAFListNotFoundError`` for a missing list."""
        list_id = self.waf_list_id(ctx, wlist, expected_description)
        if list_id is None:
            logger.warning("Failed to find the list %s", wlist.describe())
            raise WAFListNotFoundError(f"list {wlist.describe()} does not exist")
        return list_id

    def list_waf_list_items(
        self, ctx: Context, wlist: WAFList, description: str,
    ) -> tuple[list[WAFListItem], bool, bool]:
        cached = self.cache.get(CacheKind.LIST_ITEMS, wlist)
        if cached is not None:
            return list(cached), True, True

        list_id = self.waf_list_id(ctx, wlist, description)
        if list_id is None:
            try:
                raw = self._cf.create_list(self._token, wlist.account_id, wlist.name, description, ctx=ctx)
            except CloudflareAPIError as exc:
                logger.warning("Failed to create the list %s: %s", wlist.describe(), exc)
                _hint_list_permission(exc)
                self.cache.invalidate(CacheKind.LISTS, wlist.account_id)
                raise

            meta = WAFListMeta(id=raw["id"], name=wlist.name, description=description)
            self.cache.update(CacheKind.LISTS, wlist.account_id, lambda ms: [meta, *ms])
            self.cache.set(CacheKind.LIST_ID, wlist, meta.id)
            self.cache.set(CacheKind.LIST_ITEMS, wlist, [])
            return [], False, False

        try:
            raw_items = self._cf.list_list_items(self._token, wlist.account_id, list_id, ctx=ctx)
        except CloudflareAPIError as exc:
            logger.warning("Failed to retrieve items in the list %s: %s", wlist.describe(), exc)
            _hint_list_permission(exc)
            # The list may have gone away; look it up again next time.
            self.cache.invalidate(CacheKind.LIST_ID, wlist)
            self.cache.invalidate(CacheKind.LISTS, wlist.account_id)
            raise

        items = _read_waf_list_items(wlist, raw_items)
        self.cache.set(CacheKind.LIST_ITEMS, wlist, items)
        return list(items), True, False

    def create_waf_list_items(
        self, ctx: Context, wlist: WAFList, description: str,
        prefixes: Sequence[IPPrefix], comment: str,
    ) -> None:
        if not prefixes:
            return

        list_id = self.find_waf_list(ctx, wlist, description)
        try:
            raw_items = self._cf.create_list_items(
                self._token,
                wlist.account_id,
                list_id,
                [describe_prefix_or_ip(p) for p in prefixes],
                comment,
                ctx=ctx,
            )
        except CloudflareAPIError as exc:
            logger.warning("Failed to finish adding items to the list %s: %s", wlist.describe(), exc)
            _hint_list_permission(exc)
            self.cache.invalidate(CacheKind.LIST_ITEMS, wlist)
            raise

        self._cache_items_or_invalidate(wlist, raw_items)

    def delete_waf_list_items(
        self, ctx: Context, wlist: WAFList, description: str, item_ids: Sequence[str],
    ) -> None:
        if not item_ids:
            return

        list_id = self.find_waf_list(ctx, wlist, description)
        try:
            raw_items = self._cf.delete_list_items(
                self._token, wlist.account_id, list_id, list(item_ids), ctx=ctx
            )
        except CloudflareAPIError as exc:
            logger.warning("Failed to finish deleting items from the list %s: %s", wlist.describe(), exc)
            _hint_list_permission(exc)
            self.cache.invalidate(CacheKind.LIST_ITEMS, wlist)
            raise

        self._cache_items_or_invalidate(wlist, raw_items)

    def final_clear_waf_list(self, ctx: Context, wlist: WAFList, description: str) -> tuple[bool, bool]:
        """Delete the list; if that fails, start emptying it asynchronously.

        Cached items and list ID are dropped either way. A deleted list is
        also removed from the account's cached list metadata; the other
        lists stay cached.
        """
        try:
            list_id = self.find_waf_list(ctx, wlist, description)
        except (CloudflareAPIError, AmbiguousWAFListError, WAFListNotFoundError):
            return False, False

        try:
            self._cf.delete_list(self._token, wlist.account_id, list_id, ctx=ctx)
        except CloudflareAPIError as exc:
            logger.warning("Failed to delete the list %s; clearing it instead: %s", wlist.describe(), exc)
            try:
                self._cf.replace_list_items_async(self._token, wlist.account_id, list_id, [], ctx=ctx)
            except CloudflareAPIError as exc2:
                logger.warning("Failed to start clearing the list %s: %s", wlist.describe(), exc2)
                _hint_list_permission(exc2)
                self._forget_list(wlist)
                return False, False
            self._forget_list(wlist)
            return False, True

        self._forget_list(wlist)
        self.cache.update(CacheKind.LISTS, wlist.account_id, lambda ms: [m for m in ms if m.id != list_id])
        return True, True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _forget_list(self, wlist: WAFList) -> None:
        self.cache.invalidate(CacheKind.LIST_ITEMS, wlist)
        self.cache.invalidate(CacheKind.LIST_ID, wlist)

    def _cache_items_or_invalidate(self, wlist: WAFList, raw_items: list[dict]) -> None:
        try:
            items = _read_waf_list_items(wlist, raw_items)
        except InvalidWAFListItemError:
            self.cache.invalidate(CacheKind.LIST_ITEMS, wlist)
            raise
        self.cache.set(CacheKind.LIST_ITEMS, wlist, items)


# ------------------------------------------------------------------
# Module helpers
# ------------------------------------------------------------------

def _warn_mismatched_params(
    family: IPFamily, domain: Domain, record_id: RecordID, current: RecordParams, expected: RecordParams,
) -> None:
    """Report attribute differences on a recycled record. Nothing is corrected."""
    if current.ttl != expected.ttl:
        logger.warning(
            "The TTL of the %s record of %r (ID: %s) is %s, but the configured TTL is %s; it was kept",
            family.record_type, domain.describe(), record_id, describe_ttl(current.ttl), describe_ttl(expected.ttl),
        )
    if current.proxied != expected.proxied:
        logger.warning(
            "The %s record of %r (ID: %s) is %sproxied, but the configuration says otherwise; it was kept",
            family.record_type, domain.describe(), record_id, "" if current.proxied else "not ",
        )
    if current.comment != expected.comment:
        logger.warning(
            "The comment of the %s record of %r (ID: %s) is %r, but the configured comment is %r; it was kept",
            family.record_type, domain.describe(), record_id, current.comment, expected.comment,
        )


def _read_waf_list_items(wlist: WAFList, raw_items: list[dict]) -> list[WAFListItem]:
    items: list[WAFListItem] = []
    for raw in raw_items:
        ip = raw.get("ip")
        if not ip:
            logger.warning("Found a non-IP item in the list %s", wlist.describe())
            raise InvalidWAFListItemError(f"item {raw.get('id')} of {wlist.describe()} is not an IP range")
        try:
            prefix = parse_prefix_or_ip(ip)
        except ValueError as exc:
            logger.warning("Found an invalid IP range/address %r in the list %s", ip, wlist.describe())
            raise InvalidWAFListItemError(f"item {raw.get('id')} holds {ip!r}") from exc
        items.append(WAFListItem(id=raw["id"], prefix=prefix))
    return items
