from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    log_level: str = "INFO"

    agent_host: str = "127.0.0.1"
    agent_port: int = 8071
    agent_auth_token: str = ""
    # Staging index and other agent-owned runtime files live here.
    agent_data_root: str = "/var/lib/hostsync"
    agent_dry_run: bool = True

    # Every OS file the agent reads or writes is resolved under this root.
    # Production uses "/", tests point it at a temporary directory.
    system_root: str = "/"

    # Datastore files. The running store mirrors live state, the startup store is the persisted tree.
    running_datastore_path: str = "/var/lib/hostsync/running.yaml"
    startup_datastore_path: str = "/var/lib/hostsync/startup.yaml"
    # YAML manifest advertising enabled schema features per module.
    schema_path: str = "/etc/hostsync/schema.yaml"
    schema_module: str = "ietf-system"

    # Merge the tree synthesized from OS state back into the running store.
    load_merge: bool = True
    # NTP servers are only read from the OS when explicitly enabled.
    load_ntp: bool = False
    # Reject list entries whose key already exists instead of appending a duplicate.
    reject_duplicate_keys: bool = False

    # Accounts below this uid are system accounts and never surfaced.
    min_user_uid: int = 1000
    max_user_uid: int = 60000

    hostname_apply_cmd: str = "hostname -F /etc/hostname"
    ntp_enable_cmd: str = "timedatectl set-ntp {enabled}"
    ntp_reload_cmd: str = "systemctl try-restart chronyd"
    resolver_reload_cmd: str = "systemctl try-reload-or-restart systemd-resolved"
    user_add_cmd: str = "useradd -m {name}"
    user_delete_cmd: str = "userdel -r {name}"
    user_password_cmd: str = "usermod -p {password} {name}"
    # Operations: set the clock (UTC text), reboot and power off.
    set_datetime_cmd: str = "timedatectl set-time {datetime}"
    restart_cmd: str = "systemctl reboot"
    shutdown_cmd: str = "systemctl poweroff"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def ensure_agent_dirs(settings: Settings) -> None:
    root = Path(settings.agent_data_root)
    (root / "runtime").mkdir(parents=True, exist_ok=True)
    Path(settings.running_datastore_path).parent.mkdir(parents=True, exist_ok=True)
    Path(settings.startup_datastore_path).parent.mkdir(parents=True, exist_ok=True)
