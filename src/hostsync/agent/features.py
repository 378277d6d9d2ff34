from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Mapping

from hostsync.datastore import Session
from hostsync.enums import Feature

logger = logging.getLogger(__name__)


class FeatureGate:
    """Read-only feature name -> enabled map. Unknown names are disabled."""

    def __init__(self, status: Mapping[str, bool] | None = None) -> None:
        self._status = MappingProxyType(dict(status or {}))

    @classmethod
    def load(cls, session: Session, module: str) -> "FeatureGate":
        return cls(session.feature_status(module))

    def enabled(self, name: str | Feature) -> bool:
        key = name.value if isinstance(name, Feature) else str(name)
        return bool(self._status.get(key, False))

    def log_status(self, module: str) -> None:
        logger.info("Checking %s YANG module used features", module)
        for feature in Feature:
            logger.info(
                '%s feature "%s" status = %s',
                module,
                feature.value,
                "enabled" if self.enabled(feature) else "disabled",
            )
