from __future__ import annotations

import logging
from typing import Callable

from hostsync.enums import ChangeOperation, ConfigItem
from hostsync.observability import CHANGE_EVENTS_TOTAL

from . import store
from .containers import DuplicateKeyError, KeyNotFoundError
from .context import AgentContext
from .entities import AuthorizedKey, DnsSearchDomain, DnsServer, NtpServer
from .events import ChangeEvent
from .system import SystemStateError, find_passwd_entry, read_dns_search

logger = logging.getLogger(__name__)

CREATE_FAILED = -1
MODIFY_FAILED = -2
DELETE_FAILED = -3

Create = Callable[[AgentContext, ChangeEvent, str], None]
Delete = Callable[[AgentContext, ChangeEvent], None]
Handler = Callable[[AgentContext, ChangeEvent], None]

_RECOVERABLE = (store.StoreError, SystemStateError, DuplicateKeyError, ValueError, OSError)


class HandlerError(RuntimeError):
    def __init__(self, message: str, code: int) -> None:
        super().__init__(message)
        self.code = code


def _route(ctx: AgentContext, event: ChangeEvent, expected: ConfigItem, create: Create, delete: Delete) -> None:
    assert event.item is expected, f"{event.identity} routed to the {expected.name} handler"

    logger.debug(
        "Node: %s; Previous Value: %s, Value: %s; Operation: %s",
        event.identity,
        event.previous_value,
        event.new_value,
        event.operation.value,
    )

    op = event.operation
    if op == ChangeOperation.MOVED:
        return
    if op == ChangeOperation.DELETED:
        stage, code = "delete", DELETE_FAILED
    elif op == ChangeOperation.MODIFIED:
        stage, code = "modify", MODIFY_FAILED
    else:
        stage, code = "create", CREATE_FAILED

    try:
        if op == ChangeOperation.DELETED:
            delete(ctx, event)
        else:
            # Modify discards the previous value and re-runs create with the new one.
            create(ctx, event, _new_value(event))
    except _RECOVERABLE as exc:
        logger.error("%s %s failed (%d): %s", expected.name.lower(), stage, code, exc)
        raise HandlerError(f"{expected.name.lower()} {stage} failed: {exc}", code) from exc


def _new_value(event: ChangeEvent) -> str:
    if event.new_value is not None:
        return event.new_value
    # Leaf-list entries carry their value in the identity predicate.
    value = event.path.segments[-1].predicate(".")
    if value is None:
        raise ValueError(f"{event.operation.value} event without a value: {event.identity}")
    return value


def _list_value(event: ChangeEvent) -> str:
    value = event.path.segments[-1].predicate(".")
    if value is None:
        value = event.new_value
    if value is None:
        raise ValueError(f"cannot determine leaf-list value of {event.identity}")
    return value


def _list_key(event: ChangeEvent, list_name: str) -> str:
    key = event.path.key(list_name)
    if key is None:
        raise ValueError(f"{event.identity} has no {list_name} key")
    return key


# hostname / contact / location


def _hostname_create(ctx: AgentContext, event: ChangeEvent, value: str) -> None:
    store.store_hostname(ctx, value)


def _hostname_delete(ctx: AgentContext, event: ChangeEvent) -> None:
    store.store_hostname(ctx, store.DEFAULT_HOSTNAME)


def change_hostname(ctx: AgentContext, event: ChangeEvent) -> None:
    _route(ctx, event, ConfigItem.HOSTNAME, _hostname_create, _hostname_delete)


def change_contact(ctx: AgentContext, event: ChangeEvent) -> None:
    _route(
        ctx,
        event,
        ConfigItem.CONTACT,
        lambda c, _e, value: store.store_contact(c, value),
        lambda c, _e: store.store_contact(c, None),
    )


def change_location(ctx: AgentContext, event: ChangeEvent) -> None:
    _route(
        ctx,
        event,
        ConfigItem.LOCATION,
        lambda c, _e, value: store.store_location(c, value),
        lambda c, _e: store.store_location(c, None),
    )


# clock


def change_timezone_name(ctx: AgentContext, event: ChangeEvent) -> None:
    _route(
        ctx,
        event,
        ConfigItem.TIMEZONE_NAME,
        lambda c, _e, value: store.store_timezone_name(c, value),
        lambda c, _e: store.delete_timezone_name(c),
    )


def _utc_offset_create(ctx: AgentContext, event: ChangeEvent, value: str) -> None:
    store.store_timezone_utc_offset(ctx, int(value))


def change_timezone_utc_offset(ctx: AgentContext, event: ChangeEvent) -> None:
    _route(
        ctx,
        event,
        ConfigItem.TIMEZONE_UTC_OFFSET,
        _utc_offset_create,
        lambda c, _e: store.delete_timezone_name(c),
    )


# ntp


def change_ntp_enabled(ctx: AgentContext, event: ChangeEvent) -> None:
    # Deleting the leaf falls back to the schema default (enabled).
    _route(
        ctx,
        event,
        ConfigItem.NTP_ENABLED,
        lambda c, _e, value: store.store_ntp_enabled(c, value),
        lambda c, _e: store.store_ntp_enabled(c, True),
    )


_NTP_SERVER_FIELDS: dict[str, Callable[[NtpServer, str | None], None]] = {
    "udp/address": NtpServer.set_address,
    "udp/port": NtpServer.set_port,
    "association-type": NtpServer.set_association_type,
    "iburst": NtpServer.set_iburst,
    "prefer": NtpServer.set_prefer,
}


def _ntp_server_create(ctx: AgentContext, event: ChangeEvent, value: str) -> None:
    name = _list_key(event, "server")
    field = event.path.relative_to(ConfigItem.NTP_SERVER)
    servers = ctx.index.ntp_servers(reject_duplicates=ctx.settings.reject_duplicate_keys)
    if field in {"", "name"}:
        if event.operation == ChangeOperation.CREATED:
            servers.add(NtpServer(name=name))
    else:
        setter = _NTP_SERVER_FIELDS.get(field)
        if setter is None:
            raise ValueError(f"unsupported ntp server field: {field}")
        server = servers.find(name) or servers.add(NtpServer(name=name))
        setter(server, value)
    store.store_ntp_servers(ctx, servers)


def _ntp_server_delete(ctx: AgentContext, event: ChangeEvent) -> None:
    name = _list_key(event, "server")
    field = event.path.relative_to(ConfigItem.NTP_SERVER)
    servers = ctx.index.ntp_servers()
    if field in {"", "name"}:
        try:
            servers.remove(name)
        except KeyNotFoundError:
            logger.info("ntp server %s already removed", name)
    else:
        setter = _NTP_SERVER_FIELDS.get(field)
        if setter is None:
            raise ValueError(f"unsupported ntp server field: {field}")
        server = servers.find(name)
        if server is not None:
            setter(server, None)
    store.store_ntp_servers(ctx, servers)


def change_ntp_server(ctx: AgentContext, event: ChangeEvent) -> None:
    _route(ctx, event, ConfigItem.NTP_SERVER, _ntp_server_create, _ntp_server_delete)


# dns-resolver


def _dns_search_create(ctx: AgentContext, event: ChangeEvent, value: str) -> None:
    search = read_dns_search(ctx.paths)
    domain = search.find(value)
    if domain is None:
        search.add(DnsSearchDomain(domain=value))
    else:
        domain.search = True
    store.store_dns_search(ctx, search)


def _dns_search_delete(ctx: AgentContext, event: ChangeEvent) -> None:
    domain = _list_value(event)
    search = read_dns_search(ctx.paths)
    try:
        search.remove(domain)
    except KeyNotFoundError:
        logger.info("dns search domain %s already removed", domain)
    store.store_dns_search(ctx, search)


def change_dns_resolver_search(ctx: AgentContext, event: ChangeEvent) -> None:
    _route(ctx, event, ConfigItem.DNS_SEARCH, _dns_search_create, _dns_search_delete)


_DNS_SERVER_FIELDS: dict[str, Callable[[DnsServer, str | None], None]] = {
    "udp-and-tcp/address": DnsServer.set_address,
    "udp-and-tcp/port": DnsServer.set_port,
}


def _dns_server_create(ctx: AgentContext, event: ChangeEvent, value: str) -> None:
    name = _list_key(event, "server")
    field = event.path.relative_to(ConfigItem.DNS_SERVER)
    servers = ctx.index.dns_servers(reject_duplicates=ctx.settings.reject_duplicate_keys)
    if field in {"", "name"}:
        if event.operation == ChangeOperation.CREATED:
            servers.add(DnsServer(name=name))
    else:
        setter = _DNS_SERVER_FIELDS.get(field)
        if setter is None:
            raise ValueError(f"unsupported dns server field: {field}")
        server = servers.find(name) or servers.add(DnsServer(name=name))
        setter(server, value)
    store.store_dns_servers(ctx, servers)


def _dns_server_delete(ctx: AgentContext, event: ChangeEvent) -> None:
    name = _list_key(event, "server")
    field = event.path.relative_to(ConfigItem.DNS_SERVER)
    servers = ctx.index.dns_servers()
    if field in {"", "name"}:
        try:
            servers.remove(name)
        except KeyNotFoundError:
            logger.info("dns server %s already removed", name)
    else:
        setter = _DNS_SERVER_FIELDS.get(field)
        if setter is None:
            raise ValueError(f"unsupported dns server field: {field}")
        server = servers.find(name)
        if server is not None:
            setter(server, None)
    store.store_dns_servers(ctx, servers)


def change_dns_resolver_server(ctx: AgentContext, event: ChangeEvent) -> None:
    _route(ctx, event, ConfigItem.DNS_SERVER, _dns_server_create, _dns_server_delete)


def change_dns_resolver_timeout(ctx: AgentContext, event: ChangeEvent) -> None:
    _route(
        ctx,
        event,
        ConfigItem.DNS_TIMEOUT,
        lambda c, _e, value: store.store_dns_timeout(c, value),
        lambda c, _e: store.store_dns_timeout(c, None),
    )


def change_dns_resolver_attempts(ctx: AgentContext, event: ChangeEvent) -> None:
    _route(
        ctx,
        event,
        ConfigItem.DNS_ATTEMPTS,
        lambda c, _e, value: store.store_dns_attempts(c, value),
        lambda c, _e: store.store_dns_attempts(c, None),
    )


# authentication


def _user_create(ctx: AgentContext, event: ChangeEvent, value: str) -> None:
    name = _list_key(event, "user")
    field = event.path.relative_to(ConfigItem.USER)
    if field in {"", "name"}:
        store.store_user(ctx, name)
    elif field == "password":
        store.store_user_password(ctx, name, value)
    else:
        raise ValueError(f"unsupported user field: {field}")


def _user_delete(ctx: AgentContext, event: ChangeEvent) -> None:
    name = _list_key(event, "user")
    field = event.path.relative_to(ConfigItem.USER)
    if field in {"", "name"}:
        store.delete_user(ctx, name)
    elif field == "password":
        store.store_user_password(ctx, name, None)
    else:
        raise ValueError(f"unsupported user field: {field}")


def change_authentication_user(ctx: AgentContext, event: ChangeEvent) -> None:
    _route(ctx, event, ConfigItem.USER, _user_create, _user_delete)


_AUTHORIZED_KEY_FIELDS: dict[str, Callable[[AuthorizedKey, str | None], None]] = {
    "algorithm": AuthorizedKey.set_algorithm,
    "key-data": AuthorizedKey.set_data,
}


def _authorized_key_create(ctx: AgentContext, event: ChangeEvent, value: str) -> None:
    user = _list_key(event, "user")
    name = _list_key(event, "authorized-key")
    field = event.path.relative_to(ConfigItem.AUTHORIZED_KEY)
    keys = ctx.index.authorized_keys(user, reject_duplicates=ctx.settings.reject_duplicate_keys)
    if field in {"", "name"}:
        if event.operation == ChangeOperation.CREATED:
            keys.add(AuthorizedKey(name=name))
    else:
        setter = _AUTHORIZED_KEY_FIELDS.get(field)
        if setter is None:
            raise ValueError(f"unsupported authorized-key field: {field}")
        key = keys.find(name) or keys.add(AuthorizedKey(name=name))
        setter(key, value)
    store.store_authorized_keys(ctx, user, keys)


def _authorized_key_delete(ctx: AgentContext, event: ChangeEvent) -> None:
    user = _list_key(event, "user")
    name = _list_key(event, "authorized-key")
    field = event.path.relative_to(ConfigItem.AUTHORIZED_KEY)
    keys = ctx.index.authorized_keys(user)
    if field in {"", "name"}:
        try:
            keys.remove(name)
        except KeyNotFoundError:
            logger.info("authorized key %s of %s already removed", name, user)
    else:
        setter = _AUTHORIZED_KEY_FIELDS.get(field)
        if setter is None:
            raise ValueError(f"unsupported authorized-key field: {field}")
        key = keys.find(name)
        if key is not None:
            setter(key, None)
    if find_passwd_entry(ctx.paths, user) is None:
        # The account is already gone together with its home directory.
        ctx.index.save_authorized_keys(user, keys)
        return
    store.store_authorized_keys(ctx, user, keys)


def change_authentication_authorized_key(ctx: AgentContext, event: ChangeEvent) -> None:
    _route(ctx, event, ConfigItem.AUTHORIZED_KEY, _authorized_key_create, _authorized_key_delete)


def _auth_order_create(ctx: AgentContext, event: ChangeEvent, value: str) -> None:
    order = ctx.index.authentication_order()
    if value not in order:
        order.append(value)
    store.store_authentication_order(ctx, order)


def _auth_order_delete(ctx: AgentContext, event: ChangeEvent) -> None:
    value = _list_value(event)
    order = [item for item in ctx.index.authentication_order() if item != value]
    store.store_authentication_order(ctx, order)


def change_authentication_user_authentication_order(ctx: AgentContext, event: ChangeEvent) -> None:
    _route(ctx, event, ConfigItem.USER_AUTHENTICATION_ORDER, _auth_order_create, _auth_order_delete)


HANDLERS: dict[ConfigItem, Handler] = {
    ConfigItem.HOSTNAME: change_hostname,
    ConfigItem.CONTACT: change_contact,
    ConfigItem.LOCATION: change_location,
    ConfigItem.TIMEZONE_NAME: change_timezone_name,
    ConfigItem.TIMEZONE_UTC_OFFSET: change_timezone_utc_offset,
    ConfigItem.NTP_ENABLED: change_ntp_enabled,
    ConfigItem.NTP_SERVER: change_ntp_server,
    ConfigItem.DNS_SEARCH: change_dns_resolver_search,
    ConfigItem.DNS_SERVER: change_dns_resolver_server,
    ConfigItem.DNS_TIMEOUT: change_dns_resolver_timeout,
    ConfigItem.DNS_ATTEMPTS: change_dns_resolver_attempts,
    ConfigItem.USER: change_authentication_user,
    ConfigItem.AUTHORIZED_KEY: change_authentication_authorized_key,
    ConfigItem.USER_AUTHENTICATION_ORDER: change_authentication_user_authentication_order,
}


def dispatch_event(ctx: AgentContext, event: ChangeEvent) -> str:
    item = event.item
    handler = HANDLERS[item]
    try:
        handler(ctx, event)
    except HandlerError:
        CHANGE_EVENTS_TOTAL.labels(item.name.lower(), event.operation.value, "failed").inc()
        raise
    CHANGE_EVENTS_TOTAL.labels(item.name.lower(), event.operation.value, "ok").inc()
    return f"{event.operation.value} {event.identity}"
