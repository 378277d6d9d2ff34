from __future__ import annotations

import json
import threading
from dataclasses import asdict
from pathlib import Path
from typing import Any

from .containers import AuthorizedKeyList, DnsServerList, NtpServerList
from .entities import AuthorizedKey, DnsServer, NtpServer

_INDEX_FILE_NAME = "staging-index.json"
_INDEX_LOCK = threading.Lock()
_SECTIONS = ("ntp_servers", "dns_servers", "authorized_keys", "authentication_order")


class StagingIndex:
    """
    Agent-owned record of keyed list entries.

    List entries arrive one field per change event, and the OS representations
    (resolved.conf, chrony sources, authorized_keys) either drop the list key or
    cannot hold a half-configured entry. The index keeps every entry by key so the
    OS file can be re-rendered from complete state after each event.
    """

    def __init__(self, root: Path) -> None:
        self.path = root / "runtime" / _INDEX_FILE_NAME

    def _empty(self) -> dict[str, Any]:
        return {"ntp_servers": [], "dns_servers": [], "authorized_keys": {}, "authentication_order": []}

    def _load(self) -> dict[str, Any]:
        out = self._empty()
        if not self.path.exists():
            return out
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return out
        if not isinstance(raw, dict):
            return out
        for section in _SECTIONS:
            value = raw.get(section)
            if isinstance(value, type(out[section])):
                out[section] = value
        return out

    def _save_section(self, section: str, value: Any) -> None:
        with _INDEX_LOCK:
            data = self._load()
            data[section] = value
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp.write_text(json.dumps(data, ensure_ascii=True, indent=2) + "\n", encoding="utf-8")
            tmp.replace(self.path)

    def ntp_servers(self, *, reject_duplicates: bool = False) -> NtpServerList:
        servers = NtpServerList(reject_duplicates=reject_duplicates)
        for row in self._load()["ntp_servers"]:
            if isinstance(row, dict) and row.get("name"):
                servers.add(NtpServer(**{k: v for (k, v) in row.items() if k in NtpServer.__dataclass_fields__}))
        return servers

    def save_ntp_servers(self, servers: NtpServerList) -> None:
        self._save_section("ntp_servers", [asdict(server) for server in servers])

    def dns_servers(self, *, reject_duplicates: bool = False) -> DnsServerList:
        servers = DnsServerList(reject_duplicates=reject_duplicates)
        for row in self._load()["dns_servers"]:
            if not isinstance(row, dict) or not row.get("name"):
                continue
            server = DnsServer(name=str(row["name"]))
            server.set_address(row.get("address") or None)
            server.set_port(row.get("port") or 0)
            servers.add(server)
        return servers

    def save_dns_servers(self, servers: DnsServerList) -> None:
        rows = [
            {"name": server.name, "address": server.address_text() or None, "port": server.port}
            for server in servers
        ]
        self._save_section("dns_servers", rows)

    def authorized_keys(self, user: str, *, reject_duplicates: bool = False) -> AuthorizedKeyList:
        keys = AuthorizedKeyList(reject_duplicates=reject_duplicates)
        for row in self._load()["authorized_keys"].get(user) or []:
            if isinstance(row, dict) and row.get("name"):
                keys.add(AuthorizedKey(name=row["name"], algorithm=row.get("algorithm"), data=row.get("data")))
        return keys

    def save_authorized_keys(self, user: str, keys: AuthorizedKeyList | None) -> None:
        with_users = dict(self._load()["authorized_keys"])
        if keys is None:
            with_users.pop(user, None)
        else:
            with_users[user] = [asdict(key) for key in keys]
        self._save_section("authorized_keys", with_users)

    def authentication_order(self) -> list[str]:
        return [str(value) for value in self._load()["authentication_order"]]

    def save_authentication_order(self, order: list[str]) -> None:
        self._save_section("authentication_order", list(order))
