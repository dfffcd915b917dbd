# Module: fsutil.py
# Directory/permission plumbing shared by the reconciler, session preparer and supervisor:
# - chroot template resolution (%h / %u, with %%h / %%u escapes)
# - descendant checks and ownership walks
# - drift-checked chown/chmod so re-runs don't touch anything that's already right
# - atomic writes + JSON state, same as the old sync script

import grp
import json
import logging
import os
import pwd
import stat
import tempfile

#=====================#
# Chroot templates    #
#=====================#

# Function: _substitute_token
# Purpose : Replace a single %x token while leaving the doubled %%x escape as a literal %x.
# Notes   : Split on the doubled token, substitute in each piece, rejoin with the literal.
def _substitute_token(text: str, token: str, value: str) -> str:
    escaped = "%" + token
    pieces = text.split(escaped)
    return token.join(p.replace(token, value) for p in pieces)

# Function: fncResolveChrootPath
# Purpose : Turn a chroot template into a concrete path for one user.
# Notes   : "%h/%%h/sftp" + /home/alice -> "/home/alice/%h/sftp"; "/srv/%u" + bob -> "/srv/bob".
def fncResolveChrootPath(template: str, home: str, username: str) -> str:
    path = _substitute_token(template, "%h", home)
    return _substitute_token(path, "%u", username)


def fncIsDescendant(path: str, root: str) -> bool:
    """True when path sits strictly below root (both normalised, no symlink resolution)."""
    path = os.path.normpath(os.path.abspath(path))
    root = os.path.normpath(os.path.abspath(root))
    if path == root:
        return False
    return os.path.commonpath([path, root]) == root

#=====================#
# Ownership / modes   #
#=====================#

def _lookup_uid(owner: str) -> int | None:
    try:
        return pwd.getpwnam(owner).pw_uid
    except KeyError:
        return None


def _lookup_gid(group: str) -> int | None:
    try:
        return grp.getgrnam(group).gr_gid
    except KeyError:
        return None

# Function: fncOwnershipDrift
# Purpose : Work out whether a path needs chown and/or chmod.
# Notes   : Returns (chown_needed, chmod_needed). Unknown owner/group counts as drift so
#           chown gets a chance to complain properly.
def fncOwnershipDrift(path: str, owner: str | None, group: str | None, mode: int | None) -> tuple[bool, bool]:
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return owner is not None, mode is not None

    chown_needed = False
    if owner is not None:
        uid = _lookup_uid(owner)
        chown_needed = uid is None or st.st_uid != uid
    if group is not None and not chown_needed:
        gid = _lookup_gid(group)
        chown_needed = gid is None or st.st_gid != gid

    chmod_needed = mode is not None and stat.S_IMODE(st.st_mode) != mode
    return chown_needed, chmod_needed

# Function: fncEnsureOwnership
# Purpose : chown/chmod a path only where it has drifted.
# Notes   : Goes through the runner (chown/chmod binaries); raises CommandError on failure.
async def fncEnsureOwnership(runner, path: str, owner: str | None = None, group: str | None = None,
                             mode: int | None = None) -> bool:
    chown_needed, chmod_needed = fncOwnershipDrift(path, owner, group, mode)
    if chown_needed:
        spec = f"{owner}:{group}" if group else owner
        await runner.run("chown", [spec, path])
        logging.debug("Set owner %s on %s", spec, path)
    if chmod_needed:
        await runner.run("chmod", [format(mode, "o"), path])
        logging.debug("Set mode %s on %s", format(mode, "o"), path)
    return chown_needed or chmod_needed

# Function: fncEnsureDir
# Purpose : Create a directory (and parents) if missing.
# Notes   : Returns True when something was created.
def fncEnsureDir(path: str) -> bool:
    if os.path.isdir(path):
        return False
    os.makedirs(path, exist_ok=True)
    return True

# Function: fncChainToRoot
# Purpose : List path and each of its parents up to, but excluding, root.
# Notes   : Caller guarantees path is a descendant of root.
def fncChainToRoot(path: str, root: str) -> list[str]:
    root = os.path.normpath(os.path.abspath(root))
    cur = os.path.normpath(os.path.abspath(path))
    chain = []
    while cur != root and fncIsDescendant(cur, root):
        chain.append(cur)
        cur = os.path.dirname(cur)
    return chain

#=====================#
# Files / state       #
#=====================#

def _assert_regular_or_missing(p: str | os.PathLike):
    try:
        st = os.lstat(p)
        if not stat.S_ISREG(st.st_mode):
            raise RuntimeError(f"{p} is not a regular file")
    except FileNotFoundError:
        return

# Function: fncSafeWriteAtomic
# Purpose : Write a file via temp + rename with the given mode.
# Notes   : Refuses to replace symlinks or non-regular files.
def fncSafeWriteAtomic(path: str, data: str, mode: int = 0o600):
    d = os.path.dirname(path) or "."
    os.makedirs(d, exist_ok=True)
    _assert_regular_or_missing(path)
    # write to a secure temp in same dir
    fd, tmp = tempfile.mkstemp(prefix=".tmp-", dir=d)
    try:
        os.write(fd, data.encode())
        os.fsync(fd)
    finally:
        os.close(fd)
    os.chmod(tmp, mode)
    # refuse to overwrite a symlink
    try:
        st = os.lstat(path)
        if stat.S_ISLNK(st.st_mode):
            os.remove(tmp)
            raise RuntimeError(f"Refusing to overwrite symlink: {path}")
    except FileNotFoundError:
        pass
    os.replace(tmp, path)


def fncReadText(path: str) -> str | None:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return f.read()
    except FileNotFoundError:
        return None

# Function: fncLoadState
# Purpose : Load persistent JSON state.
# Notes   : Returns a copy of default on error or missing file.
def fncLoadState(path: str, default: dict) -> dict:
    if not os.path.exists(path):
        return dict(default)
    try:
        with open(path, "r") as f:
            data = json.load(f)
        return data if isinstance(data, dict) else dict(default)
    except Exception as e:
        logging.warning("Unreadable state file %s (%s); starting fresh", path, e)
        return dict(default)


def fncSaveState(path: str, state: dict):
    fncSafeWriteAtomic(path, json.dumps(state, indent=2, sort_keys=True), 0o600)
