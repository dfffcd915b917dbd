# Module: model.py
# The desired-state snapshot and the validation that builds it from the raw config document.
#
# Raw document shape (keys matched case-insensitively):
#   {"Global": {"Chroot": {"Directory": "%h", "StartPath": "sftp"},
#               "Directories": ["sftp"],
#               "Logging": {"IgnoreNoIdentificationString": true},
#               "HostKeys": {"Ed25519": "", "Rsa": ""},
#               "Hooks": {"OnServerStartup": [], "OnSessionChange": []},
#               "PKIandPassword": "true",
#               "Ciphers": "", "HostKeyAlgorithms": "", "KexAlgorithms": "", "MACs": ""},
#    "Users":  [{"Username": "alice", "Password": "...", "PasswordIsEncrypted": false,
#                "UID": 1001, "GID": 1001, "AllowedHosts": [], "Chroot": {...},
#                "Directories": [], "PublicKeys": []}],
#    "Groups": [{"Name": "team", "GID": 2000, "Users": ["alice"]}]}
#
# Validation never fails: anything missing or malformed is defaulted and logged.

import dataclasses
import logging
from typing import Any, Optional

from sftpmatic.secretbox import fncDecryptSecret

DEFAULT_CHROOT_DIRECTORY = "%h"


@dataclasses.dataclass(frozen=True)
class ChrootPolicy:
    directory: str = DEFAULT_CHROOT_DIRECTORY
    start_path: Optional[str] = None


@dataclasses.dataclass(frozen=True)
class HostKeyMaterial:
    ed25519: str = ""
    rsa: str = ""


@dataclasses.dataclass(frozen=True)
class HookPolicy:
    on_server_startup: tuple[str, ...] = ()
    on_session_change: tuple[str, ...] = ()


@dataclasses.dataclass(frozen=True)
class GlobalPolicy:
    chroot: ChrootPolicy = ChrootPolicy()
    directories: tuple[str, ...] = ()
    host_keys: HostKeyMaterial = HostKeyMaterial()
    ignore_no_identification_string: bool = False
    hooks: HookPolicy = HookPolicy()
    ciphers: str = ""
    host_key_algorithms: str = ""
    kex_algorithms: str = ""
    macs: str = ""
    pki_and_password: bool = False


@dataclasses.dataclass(frozen=True)
class UserAccount:
    username: str
    password: str = ""
    password_is_encrypted: bool = False
    uid: Optional[int] = None
    gid: Optional[int] = None
    allowed_hosts: tuple[str, ...] = ()
    chroot: Optional[ChrootPolicy] = None   # None: inherits the global policy
    directories: tuple[str, ...] = ()
    public_keys: tuple[str, ...] = ()


@dataclasses.dataclass(frozen=True)
class GroupAccount:
    name: str
    gid: Optional[int] = None
    users: tuple[str, ...] = ()


@dataclasses.dataclass(frozen=True)
class DesiredState:
    global_policy: GlobalPolicy = GlobalPolicy()
    users: tuple[UserAccount, ...] = ()
    groups: tuple[GroupAccount, ...] = ()
    generation: int = 0

    @property
    def usernames(self) -> list[str]:
        return [u.username for u in self.users]

    def user(self, username: str) -> Optional[UserAccount]:
        for u in self.users:
            if u.username == username:
                return u
        return None

    def effective_chroot(self, user: UserAccount) -> ChrootPolicy:
        return user.chroot or self.global_policy.chroot

#=====================#
# Raw value helpers   #
#=====================#

# Function: _cfg_get
# Purpose : Case-insensitive key lookup in a raw mapping.
# Notes   : Non-dicts and missing keys give the default.
def _cfg_get(raw: Any, key: str, default: Any = None) -> Any:
    if not isinstance(raw, dict):
        return default
    if key in raw:
        return raw[key]
    wanted = key.lower()
    for k, v in raw.items():
        if isinstance(k, str) and k.lower() == wanted:
            return v
    return default


def _as_str(v: Any) -> str:
    if v is None:
        return ""
    return str(v).strip()


def _as_bool(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    if isinstance(v, str):
        return v.strip().lower() in ("1", "true", "yes", "y", "on")
    if isinstance(v, int):
        return v != 0
    return False


def _as_strs(v: Any) -> tuple[str, ...]:
    if v is None:
        return ()
    if isinstance(v, str):
        v = [v]
    if not isinstance(v, (list, tuple)):
        return ()
    return tuple(s for s in (_as_str(x) for x in v) if s)

# Function: _as_id
# Purpose : Read an optional numeric UID/GID.
# Notes   : Garbage or negatives -> None with a warning; the field is simply dropped.
def _as_id(v: Any, what: str) -> Optional[int]:
    if v is None or (isinstance(v, str) and not v.strip()):
        return None
    try:
        if isinstance(v, bool):
            raise ValueError(v)
        value = int(v)
    except (TypeError, ValueError):
        logging.warning("%s has invalid id %r; ignoring", what, v)
        return None
    if value < 0:
        logging.warning("%s has negative id %r; ignoring", what, v)
        return None
    return value

#=====================#
# Validation          #
#=====================#

def _build_chroot(raw: Any, fallback: ChrootPolicy) -> ChrootPolicy:
    directory = _as_str(_cfg_get(raw, "Directory")) or fallback.directory
    start_path = _as_str(_cfg_get(raw, "StartPath")) or fallback.start_path
    return ChrootPolicy(directory=directory, start_path=start_path or None)


def _build_global(raw: Any) -> GlobalPolicy:
    default_chroot = ChrootPolicy()
    chroot = _build_chroot(_cfg_get(raw, "Chroot"), default_chroot)

    keys_raw = _cfg_get(raw, "HostKeys")
    host_keys = HostKeyMaterial(
        ed25519=fncDecryptSecret(_as_str(_cfg_get(keys_raw, "Ed25519")), "Ed25519 host key"),
        rsa=fncDecryptSecret(_as_str(_cfg_get(keys_raw, "Rsa")), "RSA host key"),
    )
    hooks_raw = _cfg_get(raw, "Hooks")
    hooks = HookPolicy(
        on_server_startup=_as_strs(_cfg_get(hooks_raw, "OnServerStartup")),
        on_session_change=_as_strs(_cfg_get(hooks_raw, "OnSessionChange")),
    )
    logging_raw = _cfg_get(raw, "Logging")

    return GlobalPolicy(
        chroot=chroot,
        directories=_as_strs(_cfg_get(raw, "Directories")),
        host_keys=host_keys,
        ignore_no_identification_string=_as_bool(_cfg_get(logging_raw, "IgnoreNoIdentificationString")),
        hooks=hooks,
        ciphers=_as_str(_cfg_get(raw, "Ciphers")),
        host_key_algorithms=_as_str(_cfg_get(raw, "HostKeyAlgorithms")),
        kex_algorithms=_as_str(_cfg_get(raw, "KexAlgorithms")),
        macs=_as_str(_cfg_get(raw, "MACs")),
        pki_and_password=_as_bool(_cfg_get(raw, "PKIandPassword")),
    )


def _build_user(raw: Any, index: int, global_policy: GlobalPolicy) -> Optional[UserAccount]:
    username = _as_str(_cfg_get(raw, "Username"))
    if not username:
        logging.warning("Users[%d] has a null or whitespace username. Skipping user.", index)
        return None

    # Unset fields inherit the global ones; a result identical to global isn't an override.
    chroot: Optional[ChrootPolicy] = _build_chroot(_cfg_get(raw, "Chroot"), global_policy.chroot)
    if chroot == global_policy.chroot:
        chroot = None

    return UserAccount(
        username=username,
        password=fncDecryptSecret(_as_str(_cfg_get(raw, "Password")), f"password of {username}"),
        password_is_encrypted=_as_bool(_cfg_get(raw, "PasswordIsEncrypted")),
        uid=_as_id(_cfg_get(raw, "UID"), f"User '{username}' UID"),
        gid=_as_id(_cfg_get(raw, "GID"), f"User '{username}' GID"),
        allowed_hosts=_as_strs(_cfg_get(raw, "AllowedHosts")),
        chroot=chroot,
        directories=_as_strs(_cfg_get(raw, "Directories")),
        public_keys=_as_strs(_cfg_get(raw, "PublicKeys")),
    )


def _build_group(raw: Any, index: int) -> Optional[GroupAccount]:
    name = _as_str(_cfg_get(raw, "Name"))
    if not name:
        logging.warning("Groups[%d] has a null or whitespace name. Skipping group.", index)
        return None
    return GroupAccount(
        name=name,
        gid=_as_id(_cfg_get(raw, "GID"), f"Group '{name}' GID"),
        users=_as_strs(_cfg_get(raw, "Users")),
    )

# Function: fncBuildDesiredState
# Purpose : Validate a raw config document into an immutable DesiredState.
# Notes   : Never raises on content; bad entries are dropped/defaulted with a log line.
def fncBuildDesiredState(raw: Any, generation: int = 0) -> DesiredState:
    if not isinstance(raw, dict):
        logging.warning("Configuration root is not an object; using defaults")
        raw = {}

    global_policy = _build_global(_cfg_get(raw, "Global"))

    users: list[UserAccount] = []
    seen: set[str] = set()
    users_raw = _cfg_get(raw, "Users")
    for index, user_raw in enumerate(users_raw if isinstance(users_raw, list) else []):
        user = _build_user(user_raw, index, global_policy)
        if user is None:
            continue
        if user.username in seen:
            logging.warning("Users[%d] duplicates username '%s'. Skipping user.", index, user.username)
            continue
        seen.add(user.username)
        users.append(user)

    groups: list[GroupAccount] = []
    groups_raw = _cfg_get(raw, "Groups")
    for index, group_raw in enumerate(groups_raw if isinstance(groups_raw, list) else []):
        group = _build_group(group_raw, index)
        if group is not None:
            groups.append(group)

    logging.info("Configuration contains '%d' user(s) and '%d' group(s)", len(users), len(groups))
    return DesiredState(
        global_policy=global_policy,
        users=tuple(users),
        groups=tuple(groups),
        generation=generation,
    )
