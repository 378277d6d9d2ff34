from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .containers import AuthorizedKeyList

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


def _optional_text(value: object) -> str | None:
    # Unset is None, never the empty string.
    if value is None:
        return None
    return str(value)


@dataclass
class AuthorizedKey:
    name: str
    algorithm: str | None = None
    data: str | None = None

    def set_algorithm(self, algorithm: str | None) -> None:
        self.algorithm = _optional_text(algorithm)

    def set_data(self, data: str | None) -> None:
        self.data = _optional_text(data)


def _empty_keys() -> "AuthorizedKeyList":
    from .containers import AuthorizedKeyList

    return AuthorizedKeyList()


@dataclass
class LocalUser:
    name: str
    password: str | None = None
    keys: "AuthorizedKeyList" = field(default_factory=_empty_keys)

    def set_password(self, password: str | None) -> None:
        self.password = _optional_text(password)


@dataclass
class DnsSearchDomain:
    domain: str
    ifindex: int = 0
    search: bool = True


@dataclass
class DnsServer:
    """
    Resolver server entry.

    `name` is the configuration list key; entries read from the OS are named by
    their textual address. `port == 0` means the port is not configured.
    """

    name: str
    address: IPAddress | None = None
    port: int = 0

    def set_address(self, address: str | IPAddress | None) -> None:
        self.address = None if address is None else ipaddress.ip_address(str(address).strip())

    def set_port(self, port: int | str | None) -> None:
        self.port = int(port) if port not in (None, "") else 0

    def address_text(self) -> str:
        if self.address is None:
            return ""
        return str(self.address)

    def port_text(self) -> str | None:
        return str(self.port) if self.port else None


@dataclass
class NtpServer:
    name: str
    address: str | None = None
    port: str | None = None
    association_type: str | None = None
    iburst: str | None = None
    prefer: str | None = None

    def set_address(self, address: str | None) -> None:
        self.address = _optional_text(address)

    def set_port(self, port: str | None) -> None:
        self.port = _optional_text(port)

    def set_association_type(self, association_type: str | None) -> None:
        self.association_type = _optional_text(association_type)

    def set_iburst(self, iburst: str | None) -> None:
        self.iburst = _optional_text(iburst)

    def set_prefer(self, prefer: str | None) -> None:
        self.prefer = _optional_text(prefer)
