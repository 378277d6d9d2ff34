from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from hostsync.enums import SCHEMA_PREFIX, ConfigItem

ROOT_NAME = SCHEMA_PREFIX.lstrip("/")
HOSTNAME_PATH = ConfigItem.HOSTNAME.value


@dataclass
class ConfigNode:
    """
    One node of the configuration tree.

    kind is one of "container", "leaf", "list" (a list entry) or "leaf-list"
    (one value of a leaf-list). Children are only appended to existing
    parents, so a tree is always built top-down.
    """

    name: str
    kind: str = "container"
    value: Any = None
    children: list["ConfigNode"] = field(default_factory=list)

    def _append(self, node: "ConfigNode") -> "ConfigNode":
        if self.kind not in {"container", "list"}:
            raise ValueError(f"cannot append {node.name} to {self.kind} node {self.name}")
        self.children.append(node)
        return node

    def container(self, name: str) -> "ConfigNode":
        return self._append(ConfigNode(name=name))

    def leaf(self, name: str, value: Any) -> "ConfigNode":
        return self._append(ConfigNode(name=name, kind="leaf", value=value))

    def list_entry(self, list_name: str, /, **keys: Any) -> "ConfigNode":
        entry = self._append(ConfigNode(name=list_name, kind="list"))
        for key, value in keys.items():
            entry.leaf(key.replace("_", "-"), value)
        return entry

    def leaf_list(self, name: str, value: Any) -> "ConfigNode":
        return self._append(ConfigNode(name=name, kind="leaf-list", value=value))

    def child(self, name: str) -> "ConfigNode | None":
        for node in self.children:
            if node.name == name:
                return node
        return None

    def to_data(self) -> Any:
        if self.kind in {"leaf", "leaf-list"}:
            return self.value
        out: dict[str, Any] = {}
        for node in self.children:
            if node.kind in {"list", "leaf-list"}:
                out.setdefault(node.name, []).append(node.to_data())
            else:
                out[node.name] = node.to_data()
        return out


def create_system() -> ConfigNode:
    return ConfigNode(name=ROOT_NAME)


def tree_to_data(root: ConfigNode) -> dict[str, Any]:
    return {root.name: root.to_data()}


@dataclass(frozen=True)
class PathSegment:
    name: str
    predicates: tuple[tuple[str, str], ...] = ()

    def predicate(self, key: str) -> str | None:
        for name, value in self.predicates:
            if name == key:
                return value
        return None


@dataclass(frozen=True)
class ParsedPath:
    segments: tuple[PathSegment, ...]

    @property
    def schema_path(self) -> str:
        return "/" + "/".join(segment.name for segment in self.segments)

    @property
    def leaf(self) -> str:
        return self.segments[-1].name

    def key(self, list_name: str, key_name: str = "name") -> str | None:
        for segment in self.segments:
            if segment.name == list_name:
                return segment.predicate(key_name)
        return None

    def relative_to(self, item: ConfigItem) -> str:
        """Schema path below the item's own node, "" for the item itself."""
        base = item.value
        path = self.schema_path
        if path == base:
            return ""
        return path[len(base) + 1 :]


def _split_segments(identity: str) -> list[str]:
    parts: list[str] = []
    current: list[str] = []
    quote: str | None = None
    for ch in identity:
        if quote:
            current.append(ch)
            if ch == quote:
                quote = None
            continue
        if ch in {"'", '"'}:
            quote = ch
            current.append(ch)
            continue
        if ch == "/":
            if current:
                parts.append("".join(current))
            current = []
            continue
        current.append(ch)
    if quote:
        raise ValueError(f"unterminated quote in {identity!r}")
    if current:
        parts.append("".join(current))
    return parts


def _parse_segment(raw: str) -> PathSegment:
    name, sep, rest = raw.partition("[")
    predicates: list[tuple[str, str]] = []
    rest = sep + rest
    while rest:
        if not rest.startswith("["):
            raise ValueError(f"malformed predicate in {raw!r}")
        key, eq, tail = rest[1:].partition("=")
        if not eq or not tail or tail[0] not in {"'", '"'}:
            raise ValueError(f"malformed predicate in {raw!r}")
        quote = tail[0]
        end = tail.find(quote, 1)
        if end == -1 or tail[end + 1 : end + 2] != "]":
            raise ValueError(f"malformed predicate in {raw!r}")
        predicates.append((key.strip(), tail[1:end]))
        rest = tail[end + 2 :]
    return PathSegment(name=name.strip(), predicates=tuple(predicates))


def parse_identity(identity: str) -> ParsedPath:
    raw = str(identity or "").strip()
    if not raw.startswith("/"):
        raise ValueError(f"identity must be an absolute path: {identity!r}")
    segments = tuple(_parse_segment(part) for part in _split_segments(raw))
    if not segments:
        raise ValueError(f"empty identity: {identity!r}")
    return ParsedPath(segments=segments)


def classify(path: ParsedPath) -> ConfigItem:
    """Map a parsed identity to the top-level item owning it (longest match)."""
    schema_path = path.schema_path
    best: ConfigItem | None = None
    for item in ConfigItem:
        base = item.value
        if schema_path == base or schema_path.startswith(base + "/"):
            if best is None or len(base) > len(best.value):
                best = item
    if best is None:
        raise ValueError(f"no configuration item owns {schema_path}")
    return best
