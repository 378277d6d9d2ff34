from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from hostsync.datastore import YamlDatastore
from hostsync.settings import Settings

from .features import FeatureGate
from .index import StagingIndex
from .system import SystemPaths

logger = logging.getLogger(__name__)


@dataclass
class AgentContext:
    """
    Process-wide handle passed to every loader, store and change handler.

    Built once at startup and closed once at shutdown; nothing mutates it in between.
    """

    settings: Settings
    features: FeatureGate
    paths: SystemPaths
    index: StagingIndex
    running: YamlDatastore
    startup: YamlDatastore
    closed: bool = field(default=False, init=False)

    @staticmethod
    def from_settings(settings: Settings, *, features: FeatureGate | None = None) -> "AgentContext":
        schema_path = Path(settings.schema_path)
        running = YamlDatastore(Path(settings.running_datastore_path), schema_path=schema_path)
        startup = YamlDatastore(Path(settings.startup_datastore_path), schema_path=schema_path)
        if features is None:
            # Feature status is loaded before anything else touches the context.
            features = FeatureGate.load(running, settings.schema_module)
        return AgentContext(
            settings=settings,
            features=features,
            paths=SystemPaths.from_settings(settings),
            index=StagingIndex(Path(settings.agent_data_root)),
            running=running,
            startup=startup,
        )

    def close(self) -> None:
        if self.closed:
            raise RuntimeError("agent context already closed")
        self.running.discard_changes()
        self.startup.discard_changes()
        self.closed = True
        logger.info("agent context closed")
