from enum import Enum

SCHEMA_PREFIX = "/ietf-system:system"


class ChangeOperation(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"
    MOVED = "moved"


class ConfigItem(str, Enum):
    """Top-level configurable items, one change handler each."""

    HOSTNAME = f"{SCHEMA_PREFIX}/hostname"
    CONTACT = f"{SCHEMA_PREFIX}/contact"
    LOCATION = f"{SCHEMA_PREFIX}/location"
    TIMEZONE_NAME = f"{SCHEMA_PREFIX}/clock/timezone-name"
    TIMEZONE_UTC_OFFSET = f"{SCHEMA_PREFIX}/clock/timezone-utc-offset"
    NTP_ENABLED = f"{SCHEMA_PREFIX}/ntp/enabled"
    NTP_SERVER = f"{SCHEMA_PREFIX}/ntp/server"
    DNS_SEARCH = f"{SCHEMA_PREFIX}/dns-resolver/search"
    DNS_SERVER = f"{SCHEMA_PREFIX}/dns-resolver/server"
    DNS_TIMEOUT = f"{SCHEMA_PREFIX}/dns-resolver/options/timeout"
    DNS_ATTEMPTS = f"{SCHEMA_PREFIX}/dns-resolver/options/attempts"
    USER_AUTHENTICATION_ORDER = f"{SCHEMA_PREFIX}/authentication/user-authentication-order"
    USER = f"{SCHEMA_PREFIX}/authentication/user"
    AUTHORIZED_KEY = f"{SCHEMA_PREFIX}/authentication/user/authorized-key"


class Feature(str, Enum):
    RADIUS = "radius"
    AUTHENTICATION = "authentication"
    LOCAL_USERS = "local-users"
    RADIUS_AUTHENTICATION = "radius-authentication"
    NTP = "ntp"
    NTP_UDP_PORT = "ntp-udp-port"
    TIMEZONE_NAME = "timezone-name"
    DNS_UDP_TCP_PORT = "dns-udp-tcp-port"
