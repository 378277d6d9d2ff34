from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Any, Protocol

import yaml

logger = logging.getLogger(__name__)


class DatastoreError(RuntimeError):
    pass


class Session(Protocol):
    def tree(self) -> dict[str, Any]: ...

    def get_item(self, path: str) -> Any: ...

    def edit_batch(self, data: dict[str, Any], operation: str = "merge") -> None: ...

    def apply_changes(self) -> None: ...

    def feature_status(self, module: str) -> dict[str, bool]: ...


def _merge(dst: dict[str, Any], src: dict[str, Any]) -> dict[str, Any]:
    for key, value in src.items():
        current = dst.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            _merge(current, value)
        elif isinstance(current, list) and isinstance(value, list):
            dst[key] = _merge_list(current, value)
        else:
            dst[key] = copy.deepcopy(value)
    return dst


def _merge_list(current: list[Any], incoming: list[Any]) -> list[Any]:
    out = list(current)
    for value in incoming:
        if isinstance(value, dict) and "name" in value:
            # Keyed list entry: merge into the entry with the same name.
            existing = next(
                (row for row in out if isinstance(row, dict) and row.get("name") == value["name"]),
                None,
            )
            if existing is not None:
                _merge(existing, value)
                continue
        elif value in out:
            continue
        out.append(copy.deepcopy(value))
    return out


def _split_path(path: str) -> list[str]:
    raw = str(path or "").strip()
    if not raw.startswith("/") or "[" in raw:
        raise DatastoreError(f"unsupported path: {path!r}")
    return [part for part in raw.split("/") if part]


class YamlDatastore:
    """
    Configuration tree persisted as one YAML document.

    Edits are staged with `edit_batch` and only reach the file on `apply_changes`.
    """

    def __init__(self, path: Path, *, schema_path: Path | None = None) -> None:
        self.path = Path(path)
        self.schema_path = Path(schema_path) if schema_path else None
        self._pending: list[tuple[str, dict[str, Any]]] = []

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = yaml.safe_load(self.path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise DatastoreError(f"cannot read datastore {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise DatastoreError(f"datastore {self.path} is not a mapping")
        return data

    def tree(self) -> dict[str, Any]:
        return self._read()

    def get_item(self, path: str) -> Any:
        node: Any = self._read()
        for part in _split_path(path):
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return node

    def has_item(self, path: str) -> bool:
        return self.get_item(path) is not None

    def edit_batch(self, data: dict[str, Any], operation: str = "merge") -> None:
        if operation not in {"merge", "replace"}:
            raise DatastoreError(f"unsupported edit operation: {operation}")
        self._pending.append((operation, copy.deepcopy(data)))

    def discard_changes(self) -> None:
        self._pending = []

    def apply_changes(self) -> None:
        if not self._pending:
            return
        data = self._read()
        for operation, edit in self._pending:
            if operation == "replace":
                data = copy.deepcopy(edit)
            else:
                data = _merge(data, edit)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            tmp.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
            tmp.replace(self.path)
        except OSError as exc:
            raise DatastoreError(f"cannot write datastore {self.path}: {exc}") from exc
        finally:
            self._pending = []
        logger.debug("datastore %s updated", self.path)

    def feature_status(self, module: str) -> dict[str, bool]:
        if self.schema_path is None or not self.schema_path.exists():
            return {}
        try:
            manifest = yaml.safe_load(self.schema_path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise DatastoreError(f"cannot read schema manifest {self.schema_path}: {exc}") from exc
        modules = manifest.get("modules") if isinstance(manifest, dict) else None
        entry = modules.get(module) if isinstance(modules, dict) else None
        features = entry.get("features") if isinstance(entry, dict) else None
        if not isinstance(features, list):
            return {}
        return {str(name): True for name in features}
