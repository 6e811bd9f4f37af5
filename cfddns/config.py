"""cfddns — Application-wide constants and environment configuration."""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from cfddns.core.domain import Domain, parse_domain
from cfddns.core.handle import WAFList
from cfddns.core.ipnet import IPFamily
from cfddns.core.token import sanitize_token

# ---------------------------------------------------------------------------
# Cloudflare API
# ---------------------------------------------------------------------------
CLOUDFLARE_API_BASE = "https://api.cloudflare.com/client/v4"
REQUEST_TIMEOUT_SECONDS = 30.0
BULK_OPERATION_POLL_SECONDS = 0.5

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------
DEFAULT_CACHE_EXPIRATION = 6 * 60 * 60  # 6 hours
DEFAULT_UPDATE_TIMEOUT = 30.0
DEFAULT_TTL = 1  # "auto"
DEFAULT_WAF_LIST_DESCRIPTION = ""
DEFAULT_WAF_LIST_ITEM_COMMENT = ""

# ---------------------------------------------------------------------------
# Token environment variables, in lookup order
# ---------------------------------------------------------------------------
TOKEN_ENV_VARS = ("CLOUDFLARE_API_TOKEN", "CF_API_TOKEN")
TOKEN_FILE_ENV_VARS = ("CLOUDFLARE_API_TOKEN_FILE", "CF_API_TOKEN_FILE")

_DURATION_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)([smh]?)$")
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600}
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


class ConfigError(ValueError):
    """Raised when an environment variable holds an invalid value."""

    def __init__(self, variable: str, message: str):
        self.variable = variable
        super().__init__(f"{variable}: {message}")


@dataclass
class Settings:
    """Everything the updater needs to run one reconciliation cycle."""

    token: str = ""
    account_id: str = ""
    domains: dict[IPFamily, list[Domain]] = field(
        default_factory=lambda: {IPFamily.IP4: [], IPFamily.IP6: []}
    )
    ttl: int = DEFAULT_TTL
    proxied: bool = False
    record_comment: str = ""
    waf_lists: list[WAFList] = field(default_factory=list)
    waf_list_description: str = DEFAULT_WAF_LIST_DESCRIPTION
    waf_list_item_comment: str = DEFAULT_WAF_LIST_ITEM_COMMENT
    cache_expiration: float = DEFAULT_CACHE_EXPIRATION
    update_timeout: float = DEFAULT_UPDATE_TIMEOUT
    delete_on_stop: bool = False
    # Address families under management; IP list items of other families are removed
    families: list[IPFamily] = field(default_factory=lambda: [IPFamily.IP4, IPFamily.IP6])


# ------------------------------------------------------------------
# Parsers
# ------------------------------------------------------------------

def parse_duration(variable: str, raw: str) -> float:
    """Parse ``30``, ``30s``, ``5m`` or ``6h`` into seconds."""
    match = _DURATION_PATTERN.match(raw.strip().lower())
    if not match:
        raise ConfigError(variable, f"invalid duration {raw!r}")
    return float(match.group(1)) * _DURATION_UNITS[match.group(2)]


def parse_bool(variable: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ConfigError(variable, f"expected a boolean, got {raw!r}")


def parse_domains(raw: str) -> list[Domain]:
    """Split a comma/whitespace separated list of domains, keeping order, dropping repeats."""
    domains: list[Domain] = []
    for part in re.split(r"[,\s]+", raw):
        if not part:
            continue
        domain = parse_domain(part)
        if domain not in domains:
            domains.append(domain)
    return domains


def parse_waf_list(variable: str, raw: str) -> WAFList:
    account_id, sep, name = raw.strip().partition("/")
    if not sep or not account_id or not name:
        raise ConfigError(variable, f"expected ACCOUNT_ID/LIST_NAME, got {raw!r}")
    return WAFList(account_id=account_id, name=name)


def read_token(environ: Mapping[str, str]) -> str:
    """Return the raw API token from the environment or a token file."""
    for var in TOKEN_ENV_VARS:
        if environ.get(var, "").strip():
            return environ[var]
    for var in TOKEN_FILE_ENV_VARS:
        path = environ.get(var, "").strip()
        if path:
            try:
                return Path(path).read_text(encoding="utf-8")
            except OSError as exc:
                raise ConfigError(var, f"cannot read {path}: {exc}") from exc
    return ""


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Build :class:`Settings` from environment variables.

    Raises ``ConfigError`` naming the offending variable.
    """
    env = os.environ if environ is None else environ
    settings = Settings()

    raw_token = read_token(env)
    if raw_token:
        try:
            settings.token = sanitize_token(raw_token)
        except ValueError as exc:
            raise ConfigError("CLOUDFLARE_API_TOKEN", str(exc)) from exc
    settings.account_id = env.get("CF_ACCOUNT_ID", "").strip()

    both = parse_domains(env.get("DOMAINS", ""))
    for family, var in ((IPFamily.IP4, "IP4_DOMAINS"), (IPFamily.IP6, "IP6_DOMAINS")):
        merged = list(both)
        for domain in parse_domains(env.get(var, "")):
            if domain not in merged:
                merged.append(domain)
        settings.domains[family] = merged

    if env.get("TTL", "").strip():
        try:
            settings.ttl = int(env["TTL"])
        except ValueError as exc:
            raise ConfigError("TTL", f"expected an integer, got {env['TTL']!r}") from exc
        if settings.ttl < 1:
            raise ConfigError("TTL", "must be at least 1 (1 means auto)")
    if env.get("PROXIED", "").strip():
        settings.proxied = parse_bool("PROXIED", env["PROXIED"])
    settings.record_comment = env.get("RECORD_COMMENT", "")

    for part in env.get("WAF_LISTS", "").split(","):
        if part.strip():
            wlist = parse_waf_list("WAF_LISTS", part)
            if wlist not in settings.waf_lists:
                settings.waf_lists.append(wlist)
    settings.waf_list_description = env.get("WAF_LIST_DESCRIPTION", DEFAULT_WAF_LIST_DESCRIPTION)
    settings.waf_list_item_comment = env.get("WAF_LIST_ITEM_COMMENT", DEFAULT_WAF_LIST_ITEM_COMMENT)

    if env.get("CACHE_EXPIRATION", "").strip():
        settings.cache_expiration = parse_duration("CACHE_EXPIRATION", env["CACHE_EXPIRATION"])
    if env.get("UPDATE_TIMEOUT", "").strip():
        settings.update_timeout = parse_duration("UPDATE_TIMEOUT", env["UPDATE_TIMEOUT"])
    if env.get("DELETE_ON_STOP", "").strip():
        settings.delete_on_stop = parse_bool("DELETE_ON_STOP", env["DELETE_ON_STOP"])

    settings.families = [
        family
        for family, var in ((IPFamily.IP4, "IP4_ENABLED"), (IPFamily.IP6, "IP6_ENABLED"))
        if not env.get(var, "").strip() or parse_bool(var, env[var])
    ]

    return settings
