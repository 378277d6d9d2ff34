from __future__ import annotations

from dataclasses import dataclass

from hostsync.enums import ChangeOperation, ConfigItem

from .tree import ParsedPath, classify, parse_identity


@dataclass(frozen=True)
class ChangeEvent:
    """A single create/modify/delete/move notification for one configuration item."""

    identity: str
    operation: ChangeOperation
    previous_value: str | None = None
    new_value: str | None = None

    def __post_init__(self) -> None:
        if self.previous_value is not None and self.operation != ChangeOperation.MODIFIED:
            raise ValueError("previous_value is only valid for modified events")
        if self.new_value is not None and self.operation == ChangeOperation.DELETED:
            raise ValueError("deleted events carry no new_value")

    @property
    def path(self) -> ParsedPath:
        return parse_identity(self.identity)

    @property
    def item(self) -> ConfigItem:
        return classify(self.path)
