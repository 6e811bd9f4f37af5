"""Updater — run the setter over every configured domain and IP list."""

import logging
from dataclasses import dataclass, field
from typing import Mapping

from cfddns.config import Settings
from cfddns.core.cancel import Context
from cfddns.core.handle import RecordParams
from cfddns.core.ipnet import IPAddress, IPFamily
from cfddns.core.setter import ResponseCode, Setter

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------
# Data structures
# ------------------------------------------------------------------

@dataclass
class Outcome:
    """Result of reconciling a single target."""

    action: str  # "set" | "delete" | "waf-set" | "waf-clear"
    target: str
    family: IPFamily | None
    code: ResponseCode

    def describe(self) -> str:
        family = f" ({self.family.describe()})" if self.family else ""
        return f"{self.action} {self.target}{family}: {self.code.value}"


@dataclass
class UpdateResult:
    """Outcomes of one pass of the updater."""

    outcomes: list[Outcome] = field(default_factory=list)

    @property
    def succeeded(self) -> list[Outcome]:
        return [o for o in self.outcomes if o.code.ok]

    @property
    def failed(self) -> list[Outcome]:
        return [o for o in self.outcomes if not o.code.ok]

    @property
    def all_succeeded(self) -> bool:
        return len(self.failed) == 0

    @property
    def summary(self) -> str:
        counts = {code: 0 for code in ResponseCode}
        for outcome in self.outcomes:
            counts[outcome.code] += 1
        parts = []
        if counts[ResponseCode.UPDATED]:
            parts.append(f"{counts[ResponseCode.UPDATED]} updated")
        if counts[ResponseCode.UPDATING]:
            parts.append(f"{counts[ResponseCode.UPDATING]} updating")
        if counts[ResponseCode.NOOP]:
            parts.append(f"{counts[ResponseCode.NOOP]} unchanged")
        if counts[ResponseCode.FAILED]:
            parts.append(f"{counts[ResponseCode.FAILED]} failed")
        return ", ".join(parts) if parts else "Nothing to do"

    def extend(self, other: "UpdateResult") -> None:
        self.outcomes.extend(other.outcomes)


# ------------------------------------------------------------------
# Updater
# ------------------------------------------------------------------

class Updater:
    """Applies :class:`Settings` through a :class:`Setter`.

    Every target gets its own child context bounded by the update timeout,
    so one slow domain does not starve the rest.
    """

    def __init__(self, setter: Setter, settings: Settings) -> None:
        self.setter = setter
        self.settings = settings

    def _record_params(self) -> RecordParams:
        return RecordParams(
            ttl=self.settings.ttl,
            proxied=self.settings.proxied,
            comment=self.settings.record_comment,
        )

    def update_ips(self, ctx: Context, detected: Mapping[IPFamily, IPAddress | None]) -> UpdateResult:
        """Point every configured domain at the detected address of its family.

        Families without a detected address, or not managed at all, are
        skipped and their records kept.
        """
        result = UpdateResult()
        params = self._record_params()
        for family in self.settings.families:
            domains = self.settings.domains.get(family, [])
            if not domains:
                continue
            ip = detected.get(family)
            if ip is None:
                logger.warning("No %s address detected; %s records are left untouched", family.describe(),
                               family.record_type)
                continue
            for domain in domains:
                code = self.setter.set_ips(
                    ctx.with_timeout(self.settings.update_timeout), family, domain, ip, params
                )
                result.outcomes.append(Outcome("set", domain.describe(), family, code))
        return result

    def update_waf_lists(self, ctx: Context, detected: Mapping[IPFamily, IPAddress | None]) -> UpdateResult:
        """Reconcile every configured IP list.

        Only the managed families are passed on, so list items of a disabled
        family are removed while a managed family without an address keeps them.
        """
        result = UpdateResult()
        detected = managed_detection(self.settings, detected)
        for wlist in self.settings.waf_lists:
            code = self.setter.set_waf_list(
                ctx.with_timeout(self.settings.update_timeout),
                wlist,
                self.settings.waf_list_description,
                detected,
                self.settings.waf_list_item_comment,
            )
            result.outcomes.append(Outcome("waf-set", wlist.describe(), None, code))
        return result

    def delete_ips(self, ctx: Context) -> UpdateResult:
        """Remove every managed record; used when shutting down."""
        result = UpdateResult()
        for family in IPFamily:
            for domain in self.settings.domains.get(family, []):
                code = self.setter.delete(
                    ctx.with_timeout(self.settings.update_timeout), family, domain, final=True
                )
                result.outcomes.append(Outcome("delete", domain.describe(), family, code))
        return result

    def final_clear_waf_lists(self, ctx: Context) -> UpdateResult:
        result = UpdateResult()
        for wlist in self.settings.waf_lists:
            code = self.setter.final_clear_waf_list(
                ctx.with_timeout(self.settings.update_timeout), wlist, self.settings.waf_list_description
            )
            result.outcomes.append(Outcome("waf-clear", wlist.describe(), None, code))
        return result


def managed_detection(
    settings: Settings, detected: Mapping[IPFamily, IPAddress | None],
) -> dict[IPFamily, IPAddress | None]:
    """Restrict *detected* to the managed families; a missing address becomes ``None``."""
    return {family: detected.get(family) for family in settings.families}
