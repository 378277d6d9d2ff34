from __future__ import annotations

import logging

from hostsync.datastore import DatastoreError, YamlDatastore

from .context import AgentContext
from .load import LoadError, load_data
from .store import StoreError, store_data
from .tree import HOSTNAME_PATH

logger = logging.getLogger(__name__)


class StartupError(RuntimeError):
    pass


def reconcile_startup(ctx: AgentContext, running: YamlDatastore, startup: YamlDatastore) -> str:
    """
    Synchronize persisted configuration and live system state once at process start.

    The hostname leaf of the startup store is the only signal: without it the
    system is read into the running store, with it the startup tree is pushed
    into the system. Returns "load" or "store".
    """
    try:
        empty_startup = startup.get_item(HOSTNAME_PATH) is None
    except DatastoreError as exc:
        raise StartupError(f"failed checking datastore contents: {exc}") from exc

    if empty_startup:
        logger.info("Startup datastore is empty")
        logger.info("Loading initial system data")
        try:
            load_data(ctx, running)
        except LoadError as exc:
            logger.error("Error loading initial data into the running datastore")
            raise StartupError(str(exc)) from exc
        return "load"

    logger.info("Startup datastore contains data")
    logger.info("Storing startup datastore data in the system")
    try:
        applied = store_data(ctx, startup.tree())
    except (StoreError, DatastoreError) as exc:
        logger.error("Error applying initial data from startup datastore to the system")
        raise StartupError(str(exc)) from exc
    logger.info("Applied startup items: %s", ", ".join(applied))
    return "store"
