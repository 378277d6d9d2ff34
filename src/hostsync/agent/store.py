from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable

from hostsync.enums import Feature

from .containers import AuthorizedKeyList, DnsSearchList, DnsServerList, LocalUserList, NtpServerList
from .context import AgentContext
from .entities import AuthorizedKey, DnsSearchDomain, DnsServer, LocalUser, NtpServer
from .system import (
    SystemStateError,
    find_passwd_entry,
    read_dns_search,
    remove_timezone_link,
    render_command,
    run_command,
    write_authorized_keys,
    write_hostname,
    write_machine_info_key,
    write_ntp_servers,
    write_resolv_option,
    write_resolved,
    write_timezone_name,
    write_timezone_utc_offset,
)
from .tree import ROOT_NAME

logger = logging.getLogger(__name__)

DEFAULT_HOSTNAME = "none"


class StoreError(RuntimeError):
    pass


def _run(ctx: AgentContext, cmd: str) -> None:
    if not cmd:
        return
    ok, out = run_command(cmd, ctx.settings.agent_dry_run)
    if ok:
        return
    details = (out or "").strip() or "no output"
    if len(details) > 400:
        details = details[:400].rstrip() + "..."
    raise StoreError(f"command failed: {cmd}: {details}")


def _os_call(fn: Callable[..., Any], *args: Any) -> Any:
    try:
        return fn(*args)
    except (SystemStateError, OSError, ValueError) as exc:
        raise StoreError(str(exc)) from exc


def store_hostname(ctx: AgentContext, hostname: str) -> None:
    _os_call(write_hostname, ctx.paths, hostname)
    _run(ctx, ctx.settings.hostname_apply_cmd)
    logger.info("hostname set to %s", hostname)


def store_contact(ctx: AgentContext, contact: str | None) -> None:
    _os_call(write_machine_info_key, ctx.paths, "CONTACT", contact)


def store_location(ctx: AgentContext, location: str | None) -> None:
    _os_call(write_machine_info_key, ctx.paths, "LOCATION", location)


def store_timezone_name(ctx: AgentContext, name: str) -> None:
    _os_call(write_timezone_name, ctx.paths, name)
    logger.info("timezone set to %s", name)


def delete_timezone_name(ctx: AgentContext) -> None:
    _os_call(remove_timezone_link, ctx.paths)


def store_timezone_utc_offset(ctx: AgentContext, minutes: int) -> None:
    _os_call(write_timezone_utc_offset, ctx.paths, minutes)
    logger.info("timezone set to utc offset %d minutes", minutes)


def store_current_datetime(ctx: AgentContext, when: datetime) -> None:
    text = when.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
    _run(ctx, render_command(ctx.settings.set_datetime_cmd, datetime=text))
    logger.info("system clock set to %s", text)


def restart_system(ctx: AgentContext) -> None:
    logger.warning("restarting the system")
    _run(ctx, ctx.settings.restart_cmd)


def shutdown_system(ctx: AgentContext) -> None:
    logger.warning("shutting the system down")
    _run(ctx, ctx.settings.shutdown_cmd)


def store_ntp_enabled(ctx: AgentContext, enabled: bool | str) -> None:
    flag = enabled if isinstance(enabled, bool) else str(enabled).strip().lower() == "true"
    _run(ctx, render_command(ctx.settings.ntp_enable_cmd, enabled="true" if flag else "false"))


def store_ntp_servers(ctx: AgentContext, servers: NtpServerList) -> None:
    ctx.index.save_ntp_servers(servers)
    _os_call(write_ntp_servers, ctx.paths, servers)
    _run(ctx, ctx.settings.ntp_reload_cmd)


def store_dns_search(ctx: AgentContext, search: DnsSearchList) -> None:
    # Routing-only domains (`~domain`) have no place in the search leaf-list; keep them as found.
    for domain in _os_call(read_dns_search, ctx.paths):
        if not domain.search and search.find(domain.domain) is None:
            search.add(domain)
    _os_call(write_resolved, ctx.paths, search, ctx.index.dns_servers())
    _run(ctx, ctx.settings.resolver_reload_cmd)


def store_dns_servers(ctx: AgentContext, servers: DnsServerList) -> None:
    ctx.index.save_dns_servers(servers)
    search = _os_call(read_dns_search, ctx.paths)
    _os_call(write_resolved, ctx.paths, search, servers)
    _run(ctx, ctx.settings.resolver_reload_cmd)


def store_dns_timeout(ctx: AgentContext, timeout: str | None) -> None:
    _os_call(write_resolv_option, ctx.paths, "timeout", timeout)


def store_dns_attempts(ctx: AgentContext, attempts: str | None) -> None:
    _os_call(write_resolv_option, ctx.paths, "attempts", attempts)


def store_user(ctx: AgentContext, name: str) -> None:
    if _os_call(find_passwd_entry, ctx.paths, name) is None:
        _run(ctx, render_command(ctx.settings.user_add_cmd, name=name))
        logger.info("created local user %s", name)


def store_user_password(ctx: AgentContext, name: str, password: str | None) -> None:
    # A removed password locks the account rather than leaving it open.
    _run(ctx, render_command(ctx.settings.user_password_cmd, name=name, password=password or "!"))


def delete_user(ctx: AgentContext, name: str) -> None:
    _run(ctx, render_command(ctx.settings.user_delete_cmd, name=name))
    ctx.index.save_authorized_keys(name, None)
    logger.info("deleted local user %s", name)


def store_authorized_keys(ctx: AgentContext, user: str, keys: AuthorizedKeyList) -> None:
    ctx.index.save_authorized_keys(user, keys)
    _os_call(write_authorized_keys, ctx.paths, user, keys)


def store_users(ctx: AgentContext, users: LocalUserList) -> None:
    for user in users:
        store_user(ctx, user.name)
        if user.password:
            store_user_password(ctx, user.name, user.password)
        store_authorized_keys(ctx, user.name, user.keys)


def store_authentication_order(ctx: AgentContext, order: list[str]) -> None:
    ctx.index.save_authentication_order(order)


# persisted tree -> entities


def ntp_servers_from_data(rows: list[dict[str, Any]] | None, *, reject_duplicates: bool = False) -> NtpServerList:
    servers = NtpServerList(reject_duplicates=reject_duplicates)
    for row in rows or []:
        udp = row.get("udp") or {}
        server = NtpServer(name=str(row["name"]))
        server.set_address(udp.get("address"))
        server.set_port(udp.get("port"))
        server.set_association_type(row.get("association-type"))
        server.set_iburst(_bool_text(row.get("iburst")))
        server.set_prefer(_bool_text(row.get("prefer")))
        servers.add(server)
    return servers


def dns_servers_from_data(rows: list[dict[str, Any]] | None, *, reject_duplicates: bool = False) -> DnsServerList:
    servers = DnsServerList(reject_duplicates=reject_duplicates)
    for row in rows or []:
        transport = row.get("udp-and-tcp") or {}
        server = DnsServer(name=str(row["name"]))
        server.set_address(transport.get("address"))
        server.set_port(transport.get("port"))
        servers.add(server)
    return servers


def dns_search_from_data(values: list[str] | None) -> DnsSearchList:
    search = DnsSearchList()
    for domain in values or []:
        search.add(DnsSearchDomain(domain=str(domain)))
    return search


def users_from_data(rows: list[dict[str, Any]] | None, *, reject_duplicates: bool = False) -> LocalUserList:
    users = LocalUserList(reject_duplicates=reject_duplicates)
    for row in rows or []:
        user = LocalUser(name=str(row["name"]), keys=AuthorizedKeyList(reject_duplicates=reject_duplicates))
        user.set_password(row.get("password") or None)
        for key_row in row.get("authorized-key") or []:
            user.keys.add(
                AuthorizedKey(
                    name=str(key_row["name"]),
                    algorithm=key_row.get("algorithm"),
                    data=key_row.get("key-data"),
                )
            )
        users.add(user)
    return users


def _bool_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


# startup walk over the persisted tree


def _store_hostname_item(ctx: AgentContext, value: Any) -> None:
    store_hostname(ctx, str(value))


def _store_contact_item(ctx: AgentContext, value: Any) -> None:
    store_contact(ctx, None if value is None else str(value))


def _store_location_item(ctx: AgentContext, value: Any) -> None:
    store_location(ctx, None if value is None else str(value))


def _store_clock_item(ctx: AgentContext, value: Any) -> None:
    value = value or {}
    name = value.get("timezone-name")
    if name and ctx.features.enabled(Feature.TIMEZONE_NAME):
        store_timezone_name(ctx, str(name))
    elif value.get("timezone-utc-offset") is not None:
        store_timezone_utc_offset(ctx, int(value["timezone-utc-offset"]))


def _store_ntp_item(ctx: AgentContext, value: Any) -> None:
    if not ctx.features.enabled(Feature.NTP):
        return
    value = value or {}
    if "enabled" in value:
        store_ntp_enabled(ctx, value["enabled"])
    store_ntp_servers(
        ctx,
        ntp_servers_from_data(value.get("server"), reject_duplicates=ctx.settings.reject_duplicate_keys),
    )


def _store_dns_resolver_item(ctx: AgentContext, value: Any) -> None:
    value = value or {}
    # Servers go first: the search writer renders them from the index.
    store_dns_servers(
        ctx,
        dns_servers_from_data(value.get("server"), reject_duplicates=ctx.settings.reject_duplicate_keys),
    )
    store_dns_search(ctx, dns_search_from_data(value.get("search")))
    options = value.get("options") or {}
    if "timeout" in options:
        store_dns_timeout(ctx, str(options["timeout"]))
    if "attempts" in options:
        store_dns_attempts(ctx, str(options["attempts"]))


def _store_authentication_item(ctx: AgentContext, value: Any) -> None:
    if not ctx.features.enabled(Feature.AUTHENTICATION):
        return
    value = value or {}
    if "user-authentication-order" in value:
        store_authentication_order(ctx, [str(v) for v in value["user-authentication-order"]])
    if ctx.features.enabled(Feature.LOCAL_USERS):
        store_users(ctx, users_from_data(value.get("user"), reject_duplicates=ctx.settings.reject_duplicate_keys))


_STORE_ITEMS: list[tuple[str, Callable[[AgentContext, Any], None]]] = [
    ("hostname", _store_hostname_item),
    ("contact", _store_contact_item),
    ("location", _store_location_item),
    ("clock", _store_clock_item),
    ("ntp", _store_ntp_item),
    ("dns-resolver", _store_dns_resolver_item),
    ("authentication", _store_authentication_item),
]


def store_data(ctx: AgentContext, tree: dict[str, Any]) -> list[str]:
    """Apply every top-level item of a persisted tree to the system. Returns the applied item names."""
    system = tree.get(ROOT_NAME)
    if not isinstance(system, dict):
        raise StoreError(f"persisted tree has no {ROOT_NAME} container")

    applied: list[str] = []
    for name, fn in _STORE_ITEMS:
        if name not in system:
            continue
        try:
            fn(ctx, system[name])
        except (KeyError, TypeError, AttributeError, ValueError) as exc:
            raise StoreError(f"malformed {name} subtree: {exc}") from exc
        except StoreError:
            logger.error("storing %s failed", name)
            raise
        applied.append(name)
    return applied
