"""Remote handle — the interface the reconcilers use to reach the DNS provider."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Sequence

from cfddns.core.cancel import Context
from cfddns.core.domain import Domain
from cfddns.core.ipnet import IPAddress, IPFamily, IPPrefix, describe_prefix_or_ip

ZoneID = str
RecordID = str
ListID = str

TTL_AUTO = 1


def describe_ttl(ttl: int) -> str:
    return "1 (auto)" if ttl == TTL_AUTO else str(ttl)


# ------------------------------------------------------------------
# Data structures
# ------------------------------------------------------------------

@dataclass(frozen=True)
class RecordParams:
    """Attributes of a DNS record other than its address."""

    ttl: int = TTL_AUTO
    proxied: bool = False
    comment: str = ""


@dataclass(frozen=True)
class Record:
    """One A/AAAA record as listed by the provider."""

    id: RecordID
    ip: IPAddress
    params: RecordParams = RecordParams()


@dataclass(frozen=True)
class WAFList:
    """A named IP list under an account."""

    account_id: str
    name: str

    def describe(self) -> str:
        return f"{self.account_id}/{self.name}"


@dataclass(frozen=True)
class WAFListMeta:
    id: ListID
    name: str
    description: str = ""


@dataclass(frozen=True)
class WAFListItem:
    id: str
    prefix: IPPrefix

    def describe(self) -> str:
        return describe_prefix_or_ip(self.prefix)


class DeletionMode(Enum):
    """How a failed deletion treats the cached record list."""

    REGULAR = "regular"  # invalidate the cache entry
    FINAL = "final"      # last run; keep the cache entry


# ------------------------------------------------------------------
# Errors
# ------------------------------------------------------------------

class HandleError(Exception):
    """Base class for failures detected by a handle (besides API errors)."""


class ZoneNotFoundError(HandleError):
    """No zone in the account governs the domain."""


class AmbiguousZoneError(HandleError):
    """More than one zone shares the name that would govern a domain."""


class InvalidRecordError(HandleError):
    """A listed record holds something that is not an IP address."""


class WAFListNotFoundError(HandleError):
    """The named list does not exist."""


class AmbiguousWAFListError(HandleError):
    """More than one list shares the configured name."""


class InvalidWAFListItemError(HandleError):
    """A list item holds something that is not an IP range."""


# ------------------------------------------------------------------
# Interface
# ------------------------------------------------------------------

class Handle(ABC):
    """Operations the reconcilers need from the provider.

    Every method takes a :class:`Context`. Failures raise
    :class:`HandleError` subclasses or the transport error of the
    implementation; successful mutations leave any cache consistent.
    """

    @abstractmethod
    def list_records(self, ctx: Context, family: IPFamily, domain: Domain) -> tuple[list[Record], bool]:
        """Return the records of *domain* for *family*, and whether they came from the cache."""

    @abstractmethod
    def create_record(
        self, ctx: Context, family: IPFamily, domain: Domain, ip: IPAddress, params: RecordParams,
    ) -> RecordID:
        """Create a record and return its ID."""

    @abstractmethod
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
        """Point an existing record at *ip*, leaving its other attributes alone."""

    @abstractmethod
    def delete_record(
        self,
        ctx: Context,
        family: IPFamily,
        domain: Domain,
        record_id: RecordID,
        mode: DeletionMode = DeletionMode.REGULAR,
    ) -> None:
        """Delete one record."""

    @abstractmethod
    def list_waf_list_items(
        self, ctx: Context, wlist: WAFList, description: str,
    ) -> tuple[list[WAFListItem], bool, bool]:
        """Return ``(items, already_existed, cached)``, creating the list when missing."""

    @abstractmethod
    def create_waf_list_items(
        self, ctx: Context, wlist: WAFList, description: str,
        prefixes: Sequence[IPPrefix], comment: str,
    ) -> None:
        """Add IP ranges to a list in one call."""

    @abstractmethod
    def delete_waf_list_items(
        self, ctx: Context, wlist: WAFList, description: str, item_ids: Sequence[str],
    ) -> None:
        """Remove items from a list in one call."""

    @abstractmethod
    def final_clear_waf_list(self, ctx: Context, wlist: WAFList, description: str) -> tuple[bool, bool]:
        """Delete the list, or start clearing it. Returns ``(deleted, ok)``."""
