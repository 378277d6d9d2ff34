from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from hostsync.datastore import DatastoreError
from hostsync.enums import ConfigItem, Feature
from hostsync.observability import RPC_CALLS_TOTAL

from . import store
from .context import AgentContext
from .system import format_datetime, read_boot_datetime, read_platform
from .tree import ConfigNode

logger = logging.getLogger(__name__)

STATE_ROOT_NAME = "ietf-system:system-state"


class RpcError(RuntimeError):
    pass


def system_state(ctx: AgentContext, *, now: datetime | None = None) -> ConfigNode:
    """
    Operational state: platform identification and the system clock.

    Raises SystemStateError when boot time cannot be derived from the uptime file.
    """
    current = now or datetime.now().astimezone()
    state = ConfigNode(name=STATE_ROOT_NAME)

    platform = state.container("platform")
    for name, value in read_platform().items():
        platform.leaf(name, value)

    clock = state.container("clock")
    clock.leaf("current-datetime", format_datetime(current))
    clock.leaf("boot-datetime", format_datetime(read_boot_datetime(ctx.paths, current)))
    return state


def _ntp_active(ctx: AgentContext) -> bool:
    if not ctx.features.enabled(Feature.NTP):
        return False
    try:
        enabled = ctx.running.get_item(ConfigItem.NTP_ENABLED.value)
    except DatastoreError as exc:
        raise RpcError(f"cannot read ntp status: {exc}") from exc
    return str(enabled).strip().lower() == "true"


def _call(rpc: str, fn: Callable[[], None]) -> None:
    try:
        fn()
    except store.StoreError as exc:
        RPC_CALLS_TOTAL.labels(rpc, "failed").inc()
        logger.error("%s failed: %s", rpc, exc)
        raise RpcError(str(exc)) from exc
    RPC_CALLS_TOTAL.labels(rpc, "ok").inc()


def set_current_datetime(ctx: AgentContext, value: str) -> datetime:
    try:
        when = datetime.fromisoformat(str(value).strip())
    except ValueError as exc:
        raise RpcError(f"invalid date-and-time: {value!r}") from exc
    if when.tzinfo is None:
        raise RpcError(f"date-and-time without a UTC offset: {value!r}")
    if _ntp_active(ctx):
        # The clock belongs to NTP while it is enabled.
        RPC_CALLS_TOTAL.labels("set-current-datetime", "failed").inc()
        raise RpcError("ntp-active: disable NTP before setting the clock")
    _call("set-current-datetime", lambda: store.store_current_datetime(ctx, when))
    return when


def restart(ctx: AgentContext) -> None:
    _call("restart", lambda: store.restart_system(ctx))


def shutdown(ctx: AgentContext) -> None:
    _call("shutdown", lambda: store.shutdown_system(ctx))
