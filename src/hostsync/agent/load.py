from __future__ import annotations

import logging
from typing import Callable

from hostsync.datastore import DatastoreError, Session
from hostsync.enums import Feature

from .containers import DnsSearchList, DnsServerList, LocalUserList, NtpServerList
from .context import AgentContext
from .system import (
    SystemStateError,
    read_authorized_keys,
    read_dns_search,
    read_dns_servers,
    read_hostname,
    read_local_users,
    read_machine_info,
    read_ntp_servers,
    read_resolv_options,
    read_timezone_name,
)
from .tree import ConfigNode, create_system, tree_to_data

logger = logging.getLogger(__name__)


class LoadError(RuntimeError):
    pass


def _load_hostname(ctx: AgentContext, parent: ConfigNode) -> None:
    parent.leaf("hostname", read_hostname(ctx.paths))


def _load_contact(ctx: AgentContext, parent: ConfigNode) -> None:
    contact = read_machine_info(ctx.paths).get("CONTACT")
    if contact:
        parent.leaf("contact", contact)


def _load_location(ctx: AgentContext, parent: ConfigNode) -> None:
    location = read_machine_info(ctx.paths).get("LOCATION")
    if location:
        parent.leaf("location", location)


def _load_timezone_name(ctx: AgentContext, parent: ConfigNode) -> None:
    if not ctx.features.enabled(Feature.TIMEZONE_NAME):
        return
    name = read_timezone_name(ctx.paths)
    clock = parent.container("clock")
    if name:
        clock.leaf("timezone-name", name)


def _load_ntp(ctx: AgentContext, parent: ConfigNode) -> None:
    if not (ctx.settings.load_ntp and ctx.features.enabled(Feature.NTP)):
        return
    servers = NtpServerList()
    try:
        servers = read_ntp_servers(ctx.paths)
        ntp = parent.container("ntp")
        for server in servers:
            entry = ntp.list_entry("server", name=server.name)
            if server.address:
                udp = entry.container("udp")
                udp.leaf("address", server.address)
                if server.port:
                    udp.leaf("port", server.port)
            if server.association_type:
                entry.leaf("association-type", server.association_type)
            if server.iburst:
                entry.leaf("iburst", server.iburst)
            if server.prefer:
                entry.leaf("prefer", server.prefer)
        ctx.index.save_ntp_servers(servers)
    finally:
        servers.clear()


def _load_dns_resolver(ctx: AgentContext, parent: ConfigNode) -> None:
    search = DnsSearchList()
    servers = DnsServerList()
    try:
        resolver = parent.container("dns-resolver")

        logger.info("Loading DNS search values from the system")
        search = read_dns_search(ctx.paths)
        logger.info("Loading DNS server values from the system")
        servers = read_dns_servers(ctx.paths)

        for domain in search:
            if not domain.search:
                logger.debug("Skipping routing-only domain %s", domain.domain)
                continue
            resolver.leaf_list("search", domain.domain)

        for server in servers:
            address = server.address_text()
            entry = resolver.list_entry("server", name=server.name)
            transport = entry.container("udp-and-tcp")
            transport.leaf("address", address)
            port = server.port_text()
            if port is not None:
                transport.leaf("port", port)
        ctx.index.save_dns_servers(servers)

        options = read_resolv_options(ctx.paths)
        if options.get("timeout") or options.get("attempts"):
            node = resolver.container("options")
            if options.get("timeout"):
                node.leaf("timeout", options["timeout"])
            if options.get("attempts"):
                node.leaf("attempts", options["attempts"])
    finally:
        search.clear()
        servers.clear()


def _load_authentication(ctx: AgentContext, parent: ConfigNode) -> None:
    if not ctx.features.enabled(Feature.AUTHENTICATION):
        return
    authentication = parent.container("authentication")
    if not ctx.features.enabled(Feature.LOCAL_USERS):
        return

    users = LocalUserList()
    try:
        logger.info("Loading users from the system")
        users = read_local_users(
            ctx.paths,
            min_uid=ctx.settings.min_user_uid,
            max_uid=ctx.settings.max_user_uid,
        )

        # Keys are attached once the whole user list exists.
        logger.info("Loading user authorized keys")
        for user in users:
            user.keys.clear()
            for key in read_authorized_keys(ctx.paths, user.name):
                user.keys.add(key)

        logger.info("Saving users and their keys to the datastore")
        for user in users:
            entry = authentication.list_entry("user", name=user.name)
            if user.password:
                entry.leaf("password", user.password)
            for key in user.keys:
                key_entry = entry.list_entry("authorized-key", name=key.name)
                if key.algorithm:
                    key_entry.leaf("algorithm", key.algorithm)
                if key.data:
                    key_entry.leaf("key-data", key.data)
            ctx.index.save_authorized_keys(user.name, user.keys)
    finally:
        users.clear()


_LOAD_ITEMS: list[tuple[str, Callable[[AgentContext, ConfigNode], None]]] = [
    ("hostname", _load_hostname),
    ("contact", _load_contact),
    ("location", _load_location),
    ("timezone-name", _load_timezone_name),
    ("ntp", _load_ntp),
    ("dns-resolver", _load_dns_resolver),
    ("authentication", _load_authentication),
]


def load_data(ctx: AgentContext, session: Session) -> ConfigNode:
    """
    Build the configuration tree from live system state.

    The system container is created first and every subtree callback appends
    below it. When `load_merge` is on, the tree is merged into `session`.
    """
    system = create_system()
    for name, fn in _LOAD_ITEMS:
        try:
            fn(ctx, system)
        except (SystemStateError, OSError, ValueError) as exc:
            logger.error("Node creation callback failed for value %s", name)
            raise LoadError(f"loading {name} failed: {exc}") from exc

    if ctx.settings.load_merge:
        try:
            session.edit_batch(tree_to_data(system), "merge")
            session.apply_changes()
        except DatastoreError as exc:
            raise LoadError(f"storing loaded tree failed: {exc}") from exc
    return system
