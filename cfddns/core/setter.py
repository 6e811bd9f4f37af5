"""Setter — converge records and IP lists toward the detected addresses."""

import logging
from enum import Enum
from typing import Mapping

from cfddns.core.cancel import Context
from cfddns.core.cloudflare_client import CloudflareAPIError
from cfddns.core.domain import Domain
from cfddns.core.handle import DeletionMode, Handle, HandleError, Record, RecordParams, WAFList, WAFListItem
from cfddns.core.ipnet import (
    IPAddress,
    IPFamily,
    IPPrefix,
    describe_prefix_or_ip,
    max_specific_prefix,
    prefix_sort_key,
    unmap,
)

logger = logging.getLogger(__name__)

# Failures of a single remote call; anything else is a bug and propagates.
_REMOTE_ERRORS = (CloudflareAPIError, HandleError)


class ResponseCode(Enum):
    """Outcome of one reconciliation."""

    NOOP = "noop"          # nothing had to change
    UPDATED = "updated"    # remote state now matches
    UPDATING = "updating"  # change started, completes asynchronously
    FAILED = "failed"      # remote state may be partially updated

    @property
    def ok(self) -> bool:
        return self is not ResponseCode.FAILED


def _interrupted(ctx: Context, what: str) -> bool:
    """Return ``True`` (and log it) when *ctx* no longer allows more work."""
    if ctx.cancelled:
        logger.warning("Operation aborted (%s); the remote state may be inconsistent", what)
        return True
    return False


class Setter:
    """Drives a :class:`Handle` to converge one target at a time.

    No method retries; a failed step makes the whole reconciliation
    ``FAILED`` and the next run starts again from a fresh read.
    """

    def __init__(self, handle: Handle) -> None:
        self.handle = handle

    # ------------------------------------------------------------------
    # DNS records
    # ------------------------------------------------------------------

    def set_ips(
        self, ctx: Context, family: IPFamily, domain: Domain, ip: IPAddress, params: RecordParams,
    ) -> ResponseCode:
        """Make *ip* the only address of *domain* for *family*.

        A record already holding *ip* is kept; otherwise the first stale
        record is recycled, and only when there is none is a record created.
        All other records are then deleted, stale ones first.
        """
        record_type = family.record_type
        ip = unmap(ip)
        if not family.matches(ip):
            logger.error("%s is not an %s address; %r left untouched", ip, family.describe(), domain.describe())
            return ResponseCode.FAILED

        try:
            records, cached = self.handle.list_records(ctx, family, domain)
        except _REMOTE_ERRORS as exc:
            logger.error("Failed to retrieve the current %s records of %r: %s", record_type, domain.describe(), exc)
            return ResponseCode.FAILED

        matched: list[Record] = []
        stale: list[Record] = []
        for record in records:
            (matched if unmap(record.ip) == ip else stale).append(record)

        if matched and not stale and len(matched) == 1:
            if cached:
                logger.info("The %s records of %r are already up to date (cached)", record_type, domain.describe())
            else:
                logger.info("The %s records of %r are already up to date", record_type, domain.describe())
            return ResponseCode.NOOP

        duplicates = matched[1:]

        if not matched:
            if stale:
                recycled = stale.pop(0)
                try:
                    self.handle.update_record(
                        ctx, family, domain, recycled.id, ip, current=recycled.params, expected=params,
                    )
                except _REMOTE_ERRORS as exc:
                    logger.error(
                        "Failed to properly update %s records of %r; records might be inconsistent: %s",
                        record_type, domain.describe(), exc,
                    )
                    return ResponseCode.FAILED
                logger.info(
                    "Updated a stale %s record of %r (ID: %s) to %s",
                    record_type, domain.describe(), recycled.id, ip,
                )
            else:
                try:
                    record_id = self.handle.create_record(ctx, family, domain, ip, params)
                except _REMOTE_ERRORS as exc:
                    logger.error(
                        "Failed to properly update %s records of %r; records might be inconsistent: %s",
                        record_type, domain.describe(), exc,
                    )
                    return ResponseCode.FAILED
                logger.info("Added a new %s record of %r (ID: %s)", record_type, domain.describe(), record_id)

        ok = True
        for record in stale:
            if _interrupted(ctx, f"deleting stale {record_type} records of {domain.describe()!r}"):
                return ResponseCode.FAILED
            if self._delete_one(ctx, family, domain, record, "stale"):
                continue
            ok = False

        for record in duplicates:
            # The desired record exists already; leftover duplicates serve no stale address.
            if _interrupted(ctx, f"deleting duplicate {record_type} records of {domain.describe()!r}"):
                return ResponseCode.UPDATED if ok else ResponseCode.FAILED
            if self._delete_one(ctx, family, domain, record, "duplicate"):
                continue
            ok = False

        if not ok:
            logger.error(
                "Failed to properly update %s records of %r; records might be inconsistent",
                record_type, domain.describe(),
            )
            return ResponseCode.FAILED
        return ResponseCode.UPDATED

    def delete(self, ctx: Context, family: IPFamily, domain: Domain, *, final: bool = False) -> ResponseCode:
        """Delete every *family* record of *domain*."""
        record_type = family.record_type
        mode = DeletionMode.FINAL if final else DeletionMode.REGULAR

        try:
            records, cached = self.handle.list_records(ctx, family, domain)
        except _REMOTE_ERRORS as exc:
            logger.error("Failed to retrieve the current %s records of %r: %s", record_type, domain.describe(), exc)
            return ResponseCode.FAILED

        if not records:
            if cached:
                logger.info("The %s records of %r were already deleted (cached)", record_type, domain.describe())
            else:
                logger.info("The %s records of %r were already deleted", record_type, domain.describe())
            return ResponseCode.NOOP

        ok = True
        for record in records:
            if _interrupted(ctx, f"deleting {record_type} records of {domain.describe()!r}"):
                return ResponseCode.FAILED
            if not self._delete_one(ctx, family, domain, record, "outdated", mode):
                ok = False

        if not ok:
            logger.error(
                "Failed to properly delete %s records of %r; records might be inconsistent",
                record_type, domain.describe(),
            )
            return ResponseCode.FAILED
        return ResponseCode.UPDATED

    def _delete_one(
        self,
        ctx: Context,
        family: IPFamily,
        domain: Domain,
        record: Record,
        kind: str,
        mode: DeletionMode = DeletionMode.REGULAR,
    ) -> bool:
        try:
            self.handle.delete_record(ctx, family, domain, record.id, mode)
        except _REMOTE_ERRORS as exc:
            logger.warning(
                "Could not delete a %s %s record of %r (ID: %s): %s",
                kind, family.record_type, domain.describe(), record.id, exc,
            )
            return False
        logger.info("Deleted a %s %s record of %r (ID: %s)", kind, family.record_type, domain.describe(), record.id)
        return True

    # ------------------------------------------------------------------
    # IP lists
    # ------------------------------------------------------------------

    def set_waf_list(
        self,
        ctx: Context,
        wlist: WAFList,
        description: str,
        detected: Mapping[IPFamily, IPAddress | None],
        item_comment: str,
    ) -> ResponseCode:
        """Make *wlist* cover exactly the detected addresses.

        A family missing from *detected* is not managed and loses all its
        items. A family mapped to ``None`` (detection failed) or to an unusable
        address keeps its items.
        New ranges are added before stale ones are removed.
        """
        try:
            items, already_existed, cached = self.handle.list_waf_list_items(ctx, wlist, description)
        except _REMOTE_ERRORS as exc:
            logger.error("Failed to retrieve the list %s: %s", wlist.describe(), exc)
            return ResponseCode.FAILED
        if not already_existed:
            logger.info("Created a new list %s", wlist.describe())

        to_create: list[IPPrefix] = []
        to_delete: list[WAFListItem] = []
        for family in IPFamily:
            family_items = [item for item in items if item.prefix.version == family.value]
            if family not in detected:
                to_delete.extend(family_items)
                continue
            ip = _usable_ip(family, detected[family])
            if ip is None:
                continue

            covered = False
            for item in family_items:
                if ip in item.prefix:
                    covered = True
                else:
                    to_delete.append(item)
            if not covered:
                to_create.append(max_specific_prefix(ip))

        to_create.sort(key=prefix_sort_key)
        to_delete.sort(key=lambda item: (prefix_sort_key(item.prefix), item.id))

        if not to_create and not to_delete:
            if cached:
                logger.info("The list %s is already up to date (cached)", wlist.describe())
            else:
                logger.info("The list %s is already up to date", wlist.describe())
            return ResponseCode.NOOP

        try:
            self.handle.create_waf_list_items(ctx, wlist, description, to_create, item_comment)
        except _REMOTE_ERRORS as exc:
            logger.error(
                "Failed to properly update the list %s; its content may be inconsistent: %s", wlist.describe(), exc,
            )
            return ResponseCode.FAILED
        for prefix in to_create:
            logger.info("Added %s to the list %s", describe_prefix_or_ip(prefix), wlist.describe())

        try:
            self.handle.delete_waf_list_items(ctx, wlist, description, [item.id for item in to_delete])
        except _REMOTE_ERRORS as exc:
            logger.error(
                "Failed to properly update the list %s; its content may be inconsistent: %s", wlist.describe(), exc,
            )
            return ResponseCode.FAILED
        for item in to_delete:
            logger.info("Deleted %s from the list %s", item.describe(), wlist.describe())

        return ResponseCode.UPDATED

    def final_clear_waf_list(self, ctx: Context, wlist: WAFList, description: str) -> ResponseCode:
        """Delete *wlist*, or at least start emptying it."""
        deleted, ok = self.handle.final_clear_waf_list(ctx, wlist, description)
        if not ok:
            logger.error("Failed to properly clear the list %s", wlist.describe())
            return ResponseCode.FAILED
        if deleted:
            logger.info("Deleted the list %s", wlist.describe())
            return ResponseCode.UPDATED
        logger.info("The list %s is being cleared", wlist.describe())
        return ResponseCode.UPDATING


def _usable_ip(family: IPFamily, ip: IPAddress | None) -> IPAddress | None:
    if ip is None:
        return None
    ip = unmap(ip)
    if not family.matches(ip) or ip.is_unspecified:
        logger.warning("Ignoring %s for %s in IP lists", ip, family.describe())
        return None
    return ip
