# Module: settings.py
# What this does:
# - Holds every path, binary and tunable SFTPmatic cares about
# - Defaults live here as constants; env vars (SFTPMATIC_*) override them
# - Settings.from_env() snapshots the lot so components (and tests) get one object

import dataclasses
import json
import logging
import os
import re

#=================#
# Global Settings #
#=================#

MIN_PYTHON_VERSION = (3, 11)
ADMIN_REQUIRED = True   # Needs root: useradd, chown, sshd

ENV_PREFIX = "SFTPMATIC_"

#-----------------------------#
# Defaults (env-overridable)  #
#-----------------------------#
CONFIG_PATH = "/etc/sftpmatic/sftp.json"
LOG_FILE = "/var/log/sftpmatic/sftpmatic.log"
LOG_LEVEL = "INFO"
STATE_DIR = "/var/lib/sftpmatic"
LOCK_NAME = ".lock"
STATE_NAME = "state.json"

HOME_BASE = "/home"
SSH_DIR = "/etc/ssh"
SSH_KEYS_IMPORT_DIR = "/etc/ssh/keys"
SSHD_CONFIG_PATH = "/etc/ssh/sshd_config"
PAM_DIR = "/etc/pam.d"

INVENTORY_GROUP = "sftp-user-inventory"   # Membership == accounts we own
VIRTUAL_GROUP_PREFIX = "sftp-gid-"
NOLOGIN_SHELL = "/usr/sbin/nologin"

HTTP_HOST = "0.0.0.0"
HTTP_PORT = 25080

COMMAND_TIMEOUT = 120.0    # Seconds; a hung useradd must not stall everything
WATCH_INTERVAL = 5.0       # Seconds between config document polls
INSTALL_PAM_HOOK = True

# killall: 0 = killed something, 1 = nothing to kill. Both fine.
KILL_OK_CODES = [0, 1]

SSHD_ARGS = ["-D", "-e"]   # Foreground, log to stderr
SSHD_NOISE = "Did not receive identification string from"

# Crash restarts wait RESTART_BACKOFF, doubling per rapid crash up to RESTART_BACKOFF_MAX.
# A child that stayed up RESTART_STABLE_AFTER seconds resets the count.
RESTART_BACKOFF = 1.0
RESTART_BACKOFF_MAX = 30.0
RESTART_STABLE_AFTER = 60.0

#------------------------------#
# Pinned binaries for exec     #
#------------------------------#
BIN = {
  "sshd":       "/usr/sbin/sshd",
  "ssh-keygen": "/usr/bin/ssh-keygen",
  "killall":    "/usr/bin/killall",
  "pkill":      "/usr/bin/pkill",
  "useradd":    "/usr/sbin/useradd",
  "usermod":    "/usr/sbin/usermod",
  "userdel":    "/usr/sbin/userdel",
  "groupadd":   "/usr/sbin/groupadd",
  "groupmod":   "/usr/sbin/groupmod",
  "gpasswd":    "/usr/bin/gpasswd",
  "chpasswd":   "/usr/sbin/chpasswd",
  "getent":     "/usr/bin/getent",
  "id":         "/usr/bin/id",
  "chown":      "/bin/chown",
  "chmod":      "/bin/chmod",
}

#===========================#
# Environment Overlay Utils #
#===========================#

# Function: _env_bool
# Purpose : Read boolean-like env vars with a default.
# Notes   : Accepts 1/true/yes/y/on (case-insensitive).
def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(ENV_PREFIX + name)
    if v is None:
        return default
    return v.strip().lower() in ("1", "true", "yes", "y", "on")

# Function: _env_str
# Purpose : Return stripped string from env with default fallback.
# Notes   : Empty -> default, same as missing.
def _env_str(name: str, default: str) -> str:
    v = os.getenv(ENV_PREFIX + name)
    v = v.strip() if v is not None else ""
    return v or default

# Function: _env_int
# Purpose : Parse an int from env; logs and falls back on garbage.
def _env_int(name: str, default: int) -> int:
    v = os.getenv(ENV_PREFIX + name, "").strip()
    if not v:
        return default
    try:
        return int(v)
    except ValueError:
        logging.error("Bad integer in %s%s: %r", ENV_PREFIX, name, v)
        return default

def _env_float(name: str, default: float) -> float:
    v = os.getenv(ENV_PREFIX + name, "").strip()
    if not v:
        return default
    try:
        return float(v)
    except ValueError:
        logging.error("Bad number in %s%s: %r", ENV_PREFIX, name, v)
        return default

# Function: _env_list
# Purpose : Parse a list from env using commas/spaces as separators.
# Notes   : Returns default when env missing/blank.
def _env_list(name: str, default: list[str]) -> list[str]:
    v = os.getenv(ENV_PREFIX + name, "")
    if not v.strip():
        return default
    parts = [p.strip() for p in re.split(r"[,\s]+", v) if p.strip()]
    return parts or default

# Function: _env_json
# Purpose : Parse JSON from an env var (objects/arrays).
# Notes   : Logs and returns default on parse failure.
def _env_json(name: str, default):
    v = os.getenv(ENV_PREFIX + name, "").strip()
    if not v:
        return default
    try:
        return json.loads(v)
    except Exception as e:
        logging.error("Bad JSON in %s%s: %s", ENV_PREFIX, name, e)
        return default


@dataclasses.dataclass
class Settings:
    config_path: str = CONFIG_PATH
    log_file: str = LOG_FILE
    log_level: str = LOG_LEVEL
    state_dir: str = STATE_DIR
    home_base: str = HOME_BASE
    ssh_dir: str = SSH_DIR
    keys_import_dir: str = SSH_KEYS_IMPORT_DIR
    sshd_config_path: str = SSHD_CONFIG_PATH
    pam_dir: str = PAM_DIR
    inventory_group: str = INVENTORY_GROUP
    virtual_group_prefix: str = VIRTUAL_GROUP_PREFIX
    nologin_shell: str = NOLOGIN_SHELL
    http_host: str = HTTP_HOST
    http_port: int = HTTP_PORT
    command_timeout: float = COMMAND_TIMEOUT
    watch_interval: float = WATCH_INTERVAL
    install_pam_hook: bool = INSTALL_PAM_HOOK
    kill_ok_codes: tuple = tuple(KILL_OK_CODES)
    sshd_args: tuple = tuple(SSHD_ARGS)
    restart_backoff: float = RESTART_BACKOFF
    restart_backoff_max: float = RESTART_BACKOFF_MAX
    bins: dict = dataclasses.field(default_factory=lambda: dict(BIN))

    @property
    def state_path(self) -> str:
        return os.path.join(self.state_dir, STATE_NAME)

    @property
    def lock_path(self) -> str:
        return os.path.join(self.state_dir, LOCK_NAME)

    def home_dir(self, username: str) -> str:
        return os.path.join(self.home_base, username)

    @classmethod
    def from_env(cls) -> "Settings":
        """Defaults above, overridden by SFTPMATIC_* variables."""
        codes = []
        for c in _env_list("KILL_OK_CODES", [str(x) for x in KILL_OK_CODES]):
            try:
                codes.append(int(c))
            except ValueError:
                logging.error("Ignoring non-numeric kill exit code: %r", c)
        bins = dict(BIN)
        # e.g. SFTPMATIC_BIN='{"sshd": "/opt/openssh/sbin/sshd"}'
        bins.update(_env_json("BIN", {}))
        return cls(
            config_path=_env_str("CONFIG", CONFIG_PATH),
            log_file=_env_str("LOG_FILE", LOG_FILE),
            log_level=_env_str("LOG_LEVEL", LOG_LEVEL).upper(),
            state_dir=_env_str("STATE_DIR", STATE_DIR),
            home_base=_env_str("HOME_BASE", HOME_BASE),
            ssh_dir=_env_str("SSH_DIR", SSH_DIR),
            keys_import_dir=_env_str("KEYS_IMPORT_DIR", SSH_KEYS_IMPORT_DIR),
            sshd_config_path=_env_str("SSHD_CONFIG", SSHD_CONFIG_PATH),
            pam_dir=_env_str("PAM_DIR", PAM_DIR),
            inventory_group=_env_str("INVENTORY_GROUP", INVENTORY_GROUP),
            http_host=_env_str("HOST", HTTP_HOST),
            http_port=_env_int("PORT", HTTP_PORT),
            command_timeout=_env_float("COMMAND_TIMEOUT", COMMAND_TIMEOUT),
            watch_interval=_env_float("WATCH_INTERVAL", WATCH_INTERVAL),
            install_pam_hook=_env_bool("INSTALL_PAM_HOOK", INSTALL_PAM_HOOK),
            kill_ok_codes=tuple(codes or KILL_OK_CODES),
            restart_backoff=_env_float("RESTART_BACKOFF", RESTART_BACKOFF),
            restart_backoff_max=_env_float("RESTART_BACKOFF_MAX", RESTART_BACKOFF_MAX),
            bins=bins,
        )
