"""cfddns — Click-based CLI entry point."""

import logging
import sys

import click

from cfddns.config import ConfigError, Settings, load_settings, parse_waf_list
from cfddns.core.cancel import Context
from cfddns.core.cloudflare_client import CloudflareAPIError
from cfddns.core.cloudflare_handle import CloudflareHandle
from cfddns.core.domain import parse_domain
from cfddns.core.handle import HandleError, RecordParams
from cfddns.core.ipnet import IPFamily, parse_ip
from cfddns.core.setter import ResponseCode, Setter
from cfddns.core.updater import Updater, UpdateResult, managed_detection

logger = logging.getLogger("cfddns")


def _setup_logging(verbose: bool, log_file: str | None) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


def _require_settings() -> Settings:
    """Load settings from the environment or abort with a helpful message."""
    try:
        settings = load_settings()
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        raise SystemExit(1)
    if not settings.token:
        click.echo("No API token.  Set CLOUDFLARE_API_TOKEN or CLOUDFLARE_API_TOKEN_FILE.", err=True)
        raise SystemExit(1)
    return settings


def _make_handle(settings: Settings) -> CloudflareHandle:
    return CloudflareHandle(
        settings.token, settings.account_id, cache_expiration=settings.cache_expiration
    )


def _parse_ip_option(family: IPFamily):
    def callback(ctx: click.Context, param: click.Parameter, value: str | None):
        if value is None:
            return None
        try:
            ip = parse_ip(value)
        except ValueError:
            raise click.BadParameter(f"{value!r} is not an IP address")
        if not family.matches(ip):
            raise click.BadParameter(f"{value!r} is not an {family.describe()} address")
        return ip
    return callback


def _parse_waf_list_arg(ctx: click.Context, param: click.Parameter, value: str):
    try:
        return parse_waf_list(param.metavar or param.name.upper(), value)
    except ConfigError as exc:
        raise click.BadParameter(str(exc))


def _report(result: UpdateResult) -> None:
    for outcome in result.outcomes:
        click.echo(f"  {outcome.describe()}")
    click.echo(result.summary)
    logger.debug("Finished: %s", result.summary)
    if not result.all_succeeded:
        raise SystemExit(1)


def _report_code(what: str, code: ResponseCode) -> None:
    click.echo(f"{what}: {code.value}")
    if not code.ok:
        raise SystemExit(1)


ip4_option = click.option("--ip4", default=None, callback=_parse_ip_option(IPFamily.IP4), help="IPv4 address.")
ip6_option = click.option("--ip6", default=None, callback=_parse_ip_option(IPFamily.IP6), help="IPv6 address.")


# ======================================================================
# CLI group
# ======================================================================

@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--log-file", default=None, type=click.Path(dir_okay=False), help="Also write logs to this file.")
def cli(verbose: bool, log_file: str | None) -> None:
    """cfddns — Keep Cloudflare DNS records and IP lists on your current IP."""
    _setup_logging(verbose, log_file)


# ======================================================================
# verify
# ======================================================================

@cli.command()
def verify() -> None:
    """Check that the configured API token is active."""
    settings = _require_settings()
    if not _make_handle(settings).verify_token(Context.background()):
        click.echo("Token verification failed.", err=True)
        raise SystemExit(1)
    click.echo("Token is valid and active.")


# ======================================================================
# zone
# ======================================================================

@cli.command()
@click.argument("domain")
def zone(domain: str) -> None:
    """Show which zone governs DOMAIN."""
    settings = _require_settings()
    target = parse_domain(domain)
    try:
        zone_id = _make_handle(settings).zone_of_domain(Context.background(), target)
    except (CloudflareAPIError, HandleError) as exc:
        click.echo(f"Could not find the zone of {target.describe()}: {exc}", err=True)
        raise SystemExit(1)
    click.echo(f"{target.describe()}  zone ID: {zone_id}")


# ======================================================================
# update
# ======================================================================

@cli.command()
@ip4_option
@ip6_option
def update(ip4, ip6) -> None:
    """Reconcile every configured domain and IP list against the given addresses."""
    settings = _require_settings()
    detected = {IPFamily.IP4: ip4, IPFamily.IP6: ip6}
    if ip4 is None and ip6 is None:
        click.echo("Nothing to do.  Pass --ip4 and/or --ip6.", err=True)
        raise SystemExit(1)

    updater = Updater(Setter(_make_handle(settings)), settings)
    ctx = Context.background()
    result = updater.update_ips(ctx, detected)
    result.extend(updater.update_waf_lists(ctx, detected))
    _report(result)


# ======================================================================
# set / delete
# ======================================================================

@cli.command("set")
@click.argument("domain")
@ip4_option
@ip6_option
@click.option("--ttl", default=None, type=click.IntRange(min=1), help="TTL for new records (1 = auto).")
@click.option("--proxied/--no-proxied", default=None, help="Cloudflare proxy toggle for new records.")
@click.option("--comment", default=None, help="Comment for new records.")
def set_cmd(domain: str, ip4, ip6, ttl: int | None, proxied: bool | None, comment: str | None) -> None:
    """Point DOMAIN at the given addresses."""
    settings = _require_settings()
    if ip4 is None and ip6 is None:
        click.echo("Nothing to do.  Pass --ip4 and/or --ip6.", err=True)
        raise SystemExit(1)

    target = parse_domain(domain)
    params = RecordParams(
        ttl=settings.ttl if ttl is None else ttl,
        proxied=settings.proxied if proxied is None else proxied,
        comment=settings.record_comment if comment is None else comment,
    )
    setter = Setter(_make_handle(settings))
    ctx = Context.background()
    failed = False
    for family, ip in ((IPFamily.IP4, ip4), (IPFamily.IP6, ip6)):
        if ip is None:
            continue
        code = setter.set_ips(ctx.with_timeout(settings.update_timeout), family, target, ip, params)
        click.echo(f"{family.record_type} {target.describe()} -> {ip}: {code.value}")
        failed = failed or not code.ok
    if failed:
        raise SystemExit(1)


@cli.command("delete")
@click.argument("domain")
@click.option("--ip4/--no-ip4", default=True, help="Delete A records.")
@click.option("--ip6/--no-ip6", default=True, help="Delete AAAA records.")
def delete_cmd(domain: str, ip4: bool, ip6: bool) -> None:
    """Delete the A/AAAA records of DOMAIN."""
    settings = _require_settings()
    target = parse_domain(domain)
    setter = Setter(_make_handle(settings))
    ctx = Context.background()
    failed = False
    for family, wanted in ((IPFamily.IP4, ip4), (IPFamily.IP6, ip6)):
        if not wanted:
            continue
        code = setter.delete(ctx.with_timeout(settings.update_timeout), family, target)
        click.echo(f"{family.record_type} {target.describe()}: {code.value}")
        failed = failed or not code.ok
    if failed:
        raise SystemExit(1)


# ======================================================================
# IP lists
# ======================================================================

@cli.command("waf-set")
@click.argument("wlist", metavar="ACCOUNT/NAME", callback=_parse_waf_list_arg)
@ip4_option
@ip6_option
def waf_set_cmd(wlist, ip4, ip6) -> None:
    """Make the IP list ACCOUNT/NAME cover exactly the given addresses."""
    settings = _require_settings()
    setter = Setter(_make_handle(settings))
    code = setter.set_waf_list(
        Context.background().with_timeout(settings.update_timeout),
        wlist,
        settings.waf_list_description,
        managed_detection(settings, {IPFamily.IP4: ip4, IPFamily.IP6: ip6}),
        settings.waf_list_item_comment,
    )
    _report_code(wlist.describe(), code)


@cli.command("waf-clear")
@click.argument("wlist", metavar="ACCOUNT/NAME", callback=_parse_waf_list_arg)
def waf_clear_cmd(wlist) -> None:
    """Delete the IP list ACCOUNT/NAME (or empty it if it cannot be deleted)."""
    settings = _require_settings()
    setter = Setter(_make_handle(settings))
    code = setter.final_clear_waf_list(
        Context.background().with_timeout(settings.update_timeout), wlist, settings.waf_list_description
    )
    _report_code(wlist.describe(), code)


# ======================================================================
# cleanup
# ======================================================================

@cli.command()
@click.option("--force", is_flag=True, help="Run even when DELETE_ON_STOP is not enabled.")
def cleanup(force: bool) -> None:
    """Delete every configured record and IP list."""
    settings = _require_settings()
    if not settings.delete_on_stop and not force:
        click.echo("DELETE_ON_STOP is not enabled; nothing deleted.  Use --force to override.")
        return

    updater = Updater(Setter(_make_handle(settings)), settings)
    ctx = Context.background()
    result = updater.delete_ips(ctx)
    result.extend(updater.final_clear_waf_lists(ctx))
    _report(result)


if __name__ == "__main__":
    cli()
