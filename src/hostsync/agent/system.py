from __future__ import annotations

import ipaddress
import os
import shlex
import subprocess
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

from hostsync.settings import Settings

from .containers import AuthorizedKeyList, DnsSearchList, DnsServerList, LocalUserList, NtpServerList
from .entities import AuthorizedKey, DnsSearchDomain, DnsServer, LocalUser, NtpServer

NTP_ASSOCIATION_TYPES = ("server", "peer", "pool")
_KEY_ALGORITHM_PREFIXES = ("ssh-", "ecdsa-", "sk-")


class SystemStateError(RuntimeError):
    pass


@dataclass(frozen=True)
class SystemPaths:
    root: Path
    hostname: Path
    machine_info: Path
    localtime: Path
    zoneinfo: Path
    resolv_conf: Path
    resolved_dropin: Path
    ntp_sources: Path
    passwd: Path
    shadow: Path
    proc_uptime: Path

    @staticmethod
    def from_settings(settings: Settings) -> "SystemPaths":
        root = Path(settings.system_root)
        return SystemPaths(
            root=root,
            hostname=root / "etc" / "hostname",
            machine_info=root / "etc" / "machine-info",
            localtime=root / "etc" / "localtime",
            zoneinfo=root / "usr" / "share" / "zoneinfo",
            resolv_conf=root / "etc" / "resolv.conf",
            resolved_dropin=root / "etc" / "systemd" / "resolved.conf.d" / "hostsync.conf",
            ntp_sources=root / "etc" / "chrony" / "sources.d" / "hostsync.sources",
            passwd=root / "etc" / "passwd",
            shadow=root / "etc" / "shadow",
            proc_uptime=root / "proc" / "uptime",
        )

    def under_root(self, absolute: str) -> Path:
        return self.root / absolute.lstrip("/")


def atomic_write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(content, encoding="utf-8")
    tmp.replace(path)


def _read_lines(path: Path) -> list[str]:
    if not path.exists():
        return []
    try:
        return path.read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        raise SystemStateError(f"cannot read {path}: {exc}") from exc


def run_command(cmd: str, dry_run: bool) -> tuple[bool, str]:
    if dry_run:
        return True, f"dry-run: {cmd}"
    proc = subprocess.run(cmd, shell=True, capture_output=True, text=True)
    output = (proc.stdout + "\n" + proc.stderr).strip()
    return proc.returncode == 0, output


def render_command(template: str, **values: str) -> str:
    return template.format(**{key: shlex.quote(str(value)) for (key, value) in values.items()})


# hostname


def read_hostname(paths: SystemPaths) -> str:
    lines = [line.strip() for line in _read_lines(paths.hostname) if line.strip()]
    if not lines:
        raise SystemStateError(f"hostname is not set in {paths.hostname}")
    return lines[0]


def write_hostname(paths: SystemPaths, hostname: str) -> None:
    atomic_write(paths.hostname, hostname.strip() + "\n")


# machine-info (contact, location)


def read_machine_info(paths: SystemPaths) -> dict[str, str]:
    out: dict[str, str] = {}
    for line in _read_lines(paths.machine_info):
        raw = line.strip()
        if not raw or raw.startswith("#") or "=" not in raw:
            continue
        key, value = raw.split("=", 1)
        # Values are shell-quoted, the same way write_machine_info_key emits them.
        try:
            words = shlex.split(value)
        except ValueError as exc:
            raise SystemStateError(f"malformed {key.strip()} in {paths.machine_info}: {exc}") from exc
        out[key.strip()] = " ".join(words)
    return out


def write_machine_info_key(paths: SystemPaths, key: str, value: str | None) -> None:
    info = read_machine_info(paths)
    if value is None:
        info.pop(key, None)
    else:
        info[key] = value
    body = "".join(f"{name}={shlex.quote(text)}\n" for (name, text) in info.items())
    atomic_write(paths.machine_info, body)


# timezone


def read_timezone_name(paths: SystemPaths) -> str | None:
    if not paths.localtime.is_symlink():
        return None
    target = Path(os.readlink(paths.localtime))
    if not target.is_absolute():
        target = (paths.localtime.parent / target).resolve()
    parts = target.parts
    if "zoneinfo" not in parts:
        return None
    idx = len(parts) - 1 - parts[::-1].index("zoneinfo")
    name = "/".join(parts[idx + 1 :])
    return name or None


def write_timezone_name(paths: SystemPaths, name: str) -> None:
    zone = paths.zoneinfo / name
    if not zone.is_file():
        raise SystemStateError(f"unknown timezone: {name}")
    paths.localtime.parent.mkdir(parents=True, exist_ok=True)
    tmp = paths.localtime.with_name(paths.localtime.name + ".tmp")
    if tmp.is_symlink() or tmp.exists():
        tmp.unlink()
    tmp.symlink_to(zone)
    tmp.replace(paths.localtime)


def remove_timezone_link(paths: SystemPaths) -> None:
    if not (paths.localtime.is_symlink() or paths.localtime.exists()):
        raise SystemStateError(f"{paths.localtime} doesn't exist")
    try:
        paths.localtime.unlink()
    except OSError as exc:
        raise SystemStateError(f"unlink {paths.localtime} failed: {exc}") from exc


def utc_offset_zone(minutes: int) -> str:
    """
    Fixed-offset zone for a UTC offset in minutes.

    The Etc/GMT zones use POSIX signs, so +120 (two hours east) is "Etc/GMT-2".
    Only whole hours between -12 and +14 exist there.
    """
    hours, rest = divmod(abs(minutes), 60)
    if rest:
        raise ValueError(f"utc offset {minutes} is not a whole number of hours")
    if minutes == 0:
        return "Etc/UTC"
    if minutes > 14 * 60 or minutes < -12 * 60:
        raise ValueError(f"utc offset {minutes} is out of range")
    return f"Etc/GMT{'-' if minutes > 0 else '+'}{hours}"


def write_timezone_utc_offset(paths: SystemPaths, minutes: int) -> None:
    write_timezone_name(paths, utc_offset_zone(minutes))


# resolver


def format_dns_server(server: DnsServer) -> str:
    """Render a server the way resolved.conf `DNS=` expects it."""
    address = server.address
    if address is None:
        raise ValueError(f"dns server {server.name} has no address")
    if not server.port:
        return str(address)
    if address.version == 6:
        return f"[{address}]:{server.port}"
    return f"{address}:{server.port}"


def parse_dns_server(text: str) -> DnsServer:
    raw = text.strip().split("#", 1)[0]
    port = 0
    if raw.startswith("["):
        end = raw.index("]")
        host, rest = raw[1:end], raw[end + 1 :]
        if rest.startswith(":"):
            port = int(rest[1:])
    elif raw.count(":") == 1:
        host, port_s = raw.split(":", 1)
        port = int(port_s)
    else:
        host = raw
    host = host.split("%", 1)[0]
    address = ipaddress.ip_address(host)
    return DnsServer(name=str(address), address=address, port=port)


def _read_resolved(paths: SystemPaths) -> dict[str, list[str]]:
    out: dict[str, list[str]] = {"DNS": [], "Domains": []}
    for line in _read_lines(paths.resolved_dropin):
        raw = line.strip()
        if not raw or raw.startswith(("#", ";", "[")) or "=" not in raw:
            continue
        key, value = raw.split("=", 1)
        if key.strip() in out:
            out[key.strip()].extend(value.split())
    return out


def read_dns_search(paths: SystemPaths) -> DnsSearchList:
    found = DnsSearchList()
    for domain in _read_resolved(paths)["Domains"]:
        routing_only = domain.startswith("~")
        found.add(DnsSearchDomain(domain=domain.lstrip("~"), ifindex=0, search=not routing_only))
    return found


def read_dns_servers(paths: SystemPaths) -> DnsServerList:
    found = DnsServerList()
    for text in _read_resolved(paths)["DNS"]:
        try:
            found.add(parse_dns_server(text))
        except ValueError as exc:
            raise SystemStateError(f"invalid DNS server entry {text!r}: {exc}") from exc
    return found


def write_resolved(paths: SystemPaths, search: DnsSearchList, servers: DnsServerList) -> None:
    domains = [item.domain if item.search else f"~{item.domain}" for item in search]
    addresses = [format_dns_server(item) for item in servers if item.address is not None]
    lines = ["[Resolve]", f"DNS={' '.join(addresses)}", f"Domains={' '.join(domains)}"]
    atomic_write(paths.resolved_dropin, "\n".join(lines) + "\n")


def read_resolv_options(paths: SystemPaths) -> dict[str, str]:
    options: dict[str, str] = {}
    for line in _read_lines(paths.resolv_conf):
        tokens = line.split()
        if not tokens or tokens[0] != "options":
            continue
        for token in tokens[1:]:
            name, _, value = token.partition(":")
            options[name] = value
    return options


def write_resolv_option(paths: SystemPaths, name: str, value: str | None) -> None:
    kept: list[str] = []
    options = read_resolv_options(paths)
    for line in _read_lines(paths.resolv_conf):
        tokens = line.split()
        if tokens and tokens[0] == "options":
            continue
        kept.append(line)
    if value is None:
        options.pop(name, None)
    else:
        options[name] = value
    if options:
        rendered = " ".join(f"{key}:{val}" if val else key for (key, val) in options.items())
        kept.append(f"options {rendered}")
    atomic_write(paths.resolv_conf, "\n".join(kept) + "\n")


# ntp


def read_ntp_servers(paths: SystemPaths) -> NtpServerList:
    found = NtpServerList()
    for line in _read_lines(paths.ntp_sources):
        body, _, comment = line.partition("#")
        tokens = body.split()
        if len(tokens) < 2 or tokens[0] not in NTP_ASSOCIATION_TYPES:
            continue
        server = NtpServer(name=comment.strip() or tokens[1])
        server.set_association_type(tokens[0])
        server.set_address(tokens[1])
        rest = tokens[2:]
        if "port" in rest:
            idx = rest.index("port")
            if idx + 1 < len(rest):
                server.set_port(rest[idx + 1])
        if "iburst" in rest:
            server.set_iburst("true")
        if "prefer" in rest:
            server.set_prefer("true")
        found.add(server)
    return found


def format_ntp_server(server: NtpServer) -> str:
    if not server.address:
        raise ValueError(f"ntp server {server.name} has no address")
    tokens = [server.association_type or "server", server.address]
    if server.port:
        tokens.extend(["port", server.port])
    if server.iburst == "true":
        tokens.append("iburst")
    if server.prefer == "true":
        tokens.append("prefer")
    return f"{' '.join(tokens)} # {server.name}"


def write_ntp_servers(paths: SystemPaths, servers: NtpServerList) -> None:
    lines = [format_ntp_server(item) for item in servers if item.address]
    atomic_write(paths.ntp_sources, "".join(f"{line}\n" for line in lines))


# accounts


@dataclass(frozen=True)
class PasswdEntry:
    name: str
    uid: int
    home: str


def read_passwd(paths: SystemPaths) -> list[PasswdEntry]:
    if not paths.passwd.exists():
        raise SystemStateError(f"{paths.passwd} doesn't exist")
    entries: list[PasswdEntry] = []
    for line in _read_lines(paths.passwd):
        fields = line.split(":")
        if len(fields) < 7:
            continue
        try:
            uid = int(fields[2])
        except ValueError:
            continue
        entries.append(PasswdEntry(name=fields[0], uid=uid, home=fields[5]))
    return entries


def _read_shadow(paths: SystemPaths) -> dict[str, str]:
    hashes: dict[str, str] = {}
    for line in _read_lines(paths.shadow):
        fields = line.split(":")
        if len(fields) >= 2:
            hashes[fields[0]] = fields[1]
    return hashes


def find_passwd_entry(paths: SystemPaths, name: str) -> PasswdEntry | None:
    for entry in read_passwd(paths):
        if entry.name == name:
            return entry
    return None


def read_local_users(paths: SystemPaths, *, min_uid: int, max_uid: int) -> LocalUserList:
    hashes = _read_shadow(paths)
    users = LocalUserList()
    for entry in read_passwd(paths):
        if entry.uid < min_uid or entry.uid > max_uid:
            continue
        user = LocalUser(name=entry.name)
        password = hashes.get(entry.name)
        # Locked or empty shadow entries are not surfaced as passwords.
        if password and password[0] not in {"!", "*"}:
            user.set_password(password)
        users.add(user)
    return users


def authorized_keys_path(paths: SystemPaths, user: str) -> Path:
    entry = find_passwd_entry(paths, user)
    home = entry.home if entry is not None else f"/home/{user}"
    return paths.under_root(home) / ".ssh" / "authorized_keys"


def read_authorized_keys(paths: SystemPaths, user: str) -> AuthorizedKeyList:
    keys = AuthorizedKeyList()
    for idx, line in enumerate(_read_lines(authorized_keys_path(paths, user))):
        tokens = line.split()
        if not tokens or tokens[0].startswith("#"):
            continue
        # Skip a leading options field such as `no-pty,command="..."`.
        start = next((pos for (pos, tok) in enumerate(tokens) if tok.startswith(_KEY_ALGORITHM_PREFIXES)), None)
        if start is None or start + 1 >= len(tokens):
            continue
        name = " ".join(tokens[start + 2 :]) or f"key-{idx}"
        keys.add(AuthorizedKey(name=name, algorithm=tokens[start], data=tokens[start + 1]))
    return keys


def write_authorized_keys(paths: SystemPaths, user: str, keys: AuthorizedKeyList) -> None:
    lines = [f"{key.algorithm} {key.data} {key.name}" for key in keys if key.algorithm and key.data]
    atomic_write(authorized_keys_path(paths, user), "".join(f"{line}\n" for line in lines))


# operational state


def read_platform() -> dict[str, str]:
    uname = os.uname()
    return {
        "os-name": uname.sysname,
        "os-release": uname.release,
        "os-version": uname.version,
        "machine": uname.machine,
    }


def read_boot_datetime(paths: SystemPaths, now: datetime) -> datetime:
    lines = _read_lines(paths.proc_uptime)
    if not lines or not lines[0].split():
        raise SystemStateError(f"uptime is not available in {paths.proc_uptime}")
    try:
        uptime = float(lines[0].split()[0])
    except ValueError as exc:
        raise SystemStateError(f"malformed uptime in {paths.proc_uptime}: {exc}") from exc
    return now - timedelta(seconds=uptime)


def format_datetime(value: datetime) -> str:
    return value.isoformat(timespec="seconds")
