# Module: accounts.py
# Thin async wrappers over the account database tools (getent/useradd/usermod/...).
# Queries answer with plain values ("no such user" is False/None, never an exception);
# mutations raise CommandError so the caller decides whether to tolerate it.

import logging

from sftpmatic.errors import CommandError

GETENT_NOT_FOUND = 2

# Function: _getent
# Purpose : Look up one entry in an account database (passwd/group/shadow).
# Notes   : Returns the split entry or None when absent; other failures raise.
async def _getent(runner, database: str, key: str) -> list[str] | None:
    rc, out = await runner.run("getent", [database, key], check=False)
    if rc == GETENT_NOT_FOUND or (rc == 0 and not out.strip()):
        return None
    if rc != 0:
        raise CommandError(["getent", database, key], rc, out)
    return out.strip().splitlines()[0].split(":")

#==========#
# Users    #
#==========#

async def fncUserExists(runner, user: str) -> bool:
    return await _getent(runner, "passwd", user) is not None

# Function: fncGetUserIds
# Purpose : Current (uid, primary gid) for a user.
# Notes   : None when the account doesn't exist.
async def fncGetUserIds(runner, user: str) -> tuple[int, int] | None:
    entry = await _getent(runner, "passwd", user)
    if entry is None or len(entry) < 4:
        return None
    return int(entry[2]), int(entry[3])

# Function: fncCreateUser
# Purpose : Create a no-login account with an optional primary GID.
# Notes   : -M: the home directory is ours to create (root-owned for the chroot).
async def fncCreateUser(runner, user: str, home: str, shell: str, gid: int | None = None):
    args = ["--comment", user, "-M", "-d", home, "-s", shell]
    if gid is not None:
        args += ["-g", str(gid)]
    await runner.run("useradd", args + [user])
    logging.info("Created local user: %s", user)

async def fncDeleteUser(runner, user: str):
    await runner.run("userdel", [user])
    logging.info("Deleted user: %s", user)

async def fncSetUserPrimaryGroup(runner, user: str, gid: int):
    await runner.run("usermod", ["-g", str(gid), user])
    logging.info("Set primary GID %s for %s", gid, user)

# Function: fncSetUserId
# Purpose : Reassign a user's UID.
# Notes   : Kills the user's processes first (usermod refuses while they run); pkill
#           finding nothing is fine.
async def fncSetUserId(runner, user: str, uid: int, current_uid: int):
    await runner.run("pkill", ["-U", str(current_uid)], check=False)
    await runner.run("usermod", ["--non-unique", "--uid", str(uid), user])
    logging.info("Changed UID of %s from %s to %s", user, current_uid, uid)

# Function: fncSetPassword
# Purpose : Set (plain or pre-hashed) or clear a user's password.
# Notes   : Password goes in on stdin, never argv. Empty -> locked '*' (key-only login).
async def fncSetPassword(runner, user: str, password: str, encrypted: bool):
    if not password:
        await runner.run("usermod", ["-p", "*", user])
        logging.info("Cleared password for %s", user)
        return
    await runner.run("chpasswd", ["-e"] if encrypted else [], input=f"{user}:{password}\n")
    logging.info("Password set for %s (not stored)", user)

async def fncGetShadowHash(runner, user: str) -> str | None:
    entry = await _getent(runner, "shadow", user)
    if entry is None or len(entry) < 2:
        return None
    return entry[1]

#==========#
# Groups   #
#==========#

async def fncGroupExists(runner, name: str) -> bool:
    return await _getent(runner, "group", name) is not None

# Function: fncGetGroup
# Purpose : Return (gid, sorted supplementary members) for a group.
# Notes   : None when the group doesn't exist.
async def fncGetGroup(runner, name: str) -> tuple[int, list[str]] | None:
    entry = await _getent(runner, "group", name)
    if entry is None or len(entry) < 3:
        return None
    members = entry[3].split(",") if len(entry) > 3 else []
    return int(entry[2]), sorted(m for m in members if m)

async def fncGroupMembers(runner, name: str) -> list[str]:
    group = await fncGetGroup(runner, name)
    return group[1] if group else []

async def fncCreateGroup(runner, name: str, gid: int | None = None):
    args = ["-f"]
    if gid is not None:
        args += ["-g", str(gid), "-o"]
    await runner.run("groupadd", args + [name])
    logging.info("Created group: %s (gid=%s)", name, gid if gid is not None else "auto")

async def fncSetGroupId(runner, name: str, gid: int):
    await runner.run("groupmod", ["-o", "-g", str(gid), name])
    logging.info("Changed GID of group %s to %s", name, gid)

async def fncGroupAddUser(runner, group: str, user: str):
    await runner.run("usermod", ["-aG", group, user])
    logging.info("Added %s to group %s", user, group)

async def fncGroupRemoveUser(runner, group: str, user: str):
    await runner.run("gpasswd", ["-d", user, group])
    logging.info("Removed %s from group %s", user, group)
