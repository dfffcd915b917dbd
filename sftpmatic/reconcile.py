# Module: reconcile.py
# Account Reconciler: converge OS users/groups onto the DesiredState.
#
# What this does (for my future self):
# - Everything we own is a member of the inventory group; anything in there that's no
#   longer configured gets userdel'd
# - Users get created (no-login shell), passwords/UIDs/GIDs corrected, home root-owned,
#   authorized_keys regenerated
# - Named groups get created, GID-corrected and their membership diffed
# - Every mutation is preceded by a query, so a second run with the same state does nothing
# - One broken user/group is logged and skipped; it never stops the rest

import hashlib
import logging
import os
import secrets

from sftpmatic import accounts
from sftpmatic.authorized_keys import fncWriteAuthorizedKeys
from sftpmatic.errors import CommandError
from sftpmatic.fsutil import (fncEnsureDir, fncEnsureOwnership, fncLoadState, fncResolveChrootPath,
                              fncSaveState)
from sftpmatic.model import DesiredState, GroupAccount, UserAccount
from sftpmatic.session import CHROOT_ROOT_MODE

CLEARED_PASSWORD = "*"
HOME_MODE = 0o711


class AccountReconciler:
    def __init__(self, settings, runner):
        self.settings = settings
        self.runner = runner

    async def _ensure_home_base(self):
        home_base = self.settings.home_base
        logging.debug("Ensuring '%s' directory exists and has correct permissions", home_base)
        fncEnsureDir(home_base)
        await fncEnsureOwnership(self.runner, home_base, owner="root", group="root")

    # Function: reconcile
    # Purpose : Full convergence pass for one DesiredState.
    # Notes   : Only a failure on the home base or inventory group propagates; everything
    #           below that is per-item log-and-continue.
    async def reconcile(self, state: DesiredState):
        logging.info("Synchronizing users and groups (generation %d)", state.generation)
        store = fncLoadState(self.settings.state_path, {"passwords": {}})
        before = dict(store.get("passwords", {}))
        fingerprints = dict(before)
        salt = store.get("salt") or secrets.token_hex(16)

        await self._ensure_home_base()
        await self._ensure_inventory_group()
        inventory = await self._remove_stale_users(state)
        await self._ensure_virtual_groups(state)

        for user in state.users:
            logging.info("Processing user '%s'", user.username)
            try:
                await self._sync_user(user, inventory, fingerprints, salt, self._home_mode(state, user))
            except (CommandError, OSError, RuntimeError, ValueError) as e:
                logging.error("Failed to synchronize user '%s': %s", user.username, e)

        for group in state.groups:
            logging.info("Processing group '%s'", group.name)
            try:
                await self._sync_group(group)
            except (CommandError, ValueError) as e:
                logging.error("Failed to synchronize group '%s': %s", group.name, e)

        desired = set(state.usernames)
        fingerprints = {k: v for k, v in fingerprints.items() if k in desired}
        if fingerprints != before or store.get("salt") != salt:
            store["passwords"] = fingerprints
            store["salt"] = salt
            try:
                fncSaveState(self.settings.state_path, store)
            except OSError as e:
                logging.warning("Could not persist reconcile state: %s", e)

        logging.info("Sync complete. Users=%d, Groups=%d", len(state.users), len(state.groups))

    #---------------------#
    # Steps               #
    #---------------------#

    async def _ensure_inventory_group(self):
        group = self.settings.inventory_group
        logging.debug("Ensuring group '%s' exists", group)
        if not await accounts.fncGroupExists(self.runner, group):
            logging.info("Creating group '%s'", group)
            await accounts.fncCreateGroup(self.runner, group)

    # Function: _remove_stale_users
    # Purpose : userdel every inventory member that isn't configured any more.
    # Notes   : Deletion failures are tolerated. Returns the surviving inventory members.
    async def _remove_stale_users(self, state: DesiredState) -> set[str]:
        try:
            members = await accounts.fncGroupMembers(self.runner, self.settings.inventory_group)
        except CommandError as e:
            logging.error("Could not list managed users; skipping removals: %s", e)
            return set()

        desired = set(state.usernames)
        remaining = set(members)
        for user in members:
            if user in desired:
                continue
            logging.info("Removing user '%s' (no longer configured)", user)
            try:
                await accounts.fncDeleteUser(self.runner, user)
                remaining.discard(user)
            except CommandError as e:
                logging.warning("Failed to delete user %s: %s", user, e)
        return remaining

    async def _ensure_virtual_groups(self, state: DesiredState):
        gids = sorted({u.gid for u in state.users if u.gid is not None})
        for gid in gids:
            name = f"{self.settings.virtual_group_prefix}{gid}"
            try:
                if not await accounts.fncGroupExists(self.runner, name):
                    logging.debug("Creating group '%s' with GID '%s'", name, gid)
                    await accounts.fncCreateGroup(self.runner, name, gid)
            except CommandError as e:
                logging.error("Failed to ensure group '%s': %s", name, e)

    # Function: _home_mode
    # Purpose : Mode the home directory should end up with.
    # Notes   : A home that is also the chroot root must match what session prep sets on it.
    def _home_mode(self, state: DesiredState, user: UserAccount) -> int:
        home = self.settings.home_dir(user.username)
        chroot_root = fncResolveChrootPath(state.effective_chroot(user).directory, home, user.username)
        if os.path.normpath(chroot_root) == os.path.normpath(home):
            return CHROOT_ROOT_MODE
        return HOME_MODE

    async def _sync_user(self, user: UserAccount, inventory: set[str], fingerprints: dict, salt: str,
                         home_mode: int = HOME_MODE):
        name = user.username
        created = False
        ids = await accounts.fncGetUserIds(self.runner, name)
        if ids is None:
            logging.debug("Creating user '%s'", name)
            await accounts.fncCreateUser(self.runner, name, self.settings.home_dir(name),
                                         self.settings.nologin_shell, user.gid)
            created = True
            ids = await accounts.fncGetUserIds(self.runner, name)
            if ids is None:
                raise ValueError(f"user '{name}' still missing after useradd")

        if name not in inventory:
            logging.debug("Adding user '%s' to '%s'", name, self.settings.inventory_group)
            await accounts.fncGroupAddUser(self.runner, self.settings.inventory_group, name)
            inventory.add(name)

        uid, gid = ids
        if user.gid is not None and gid != user.gid:
            await accounts.fncSetUserPrimaryGroup(self.runner, name, user.gid)

        await self._sync_password(user, created, fingerprints, salt)

        if user.uid is not None and uid != user.uid:
            logging.debug("Updating the UID for user '%s'", name)
            await accounts.fncSetUserId(self.runner, name, user.uid, uid)

        home = self.settings.home_dir(name)
        fncEnsureDir(home)
        await fncEnsureOwnership(self.runner, home, owner="root", group="root", mode=home_mode)
        await fncWriteAuthorizedKeys(self.runner, home, name, user.public_keys)

    # Function: _sync_password
    # Purpose : Set/clear a password only when it differs from what we last applied.
    # Notes   : Plain passwords can't be compared with the shadow hash, so we keep a salted
    #           fingerprint of what we applied. Hashed ones are compared directly.
    async def _sync_password(self, user: UserAccount, created: bool, fingerprints: dict, salt: str):
        name = user.username
        if not user.password:
            fingerprints.pop(name, None)
            if await accounts.fncGetShadowHash(self.runner, name) != CLEARED_PASSWORD:
                await accounts.fncSetPassword(self.runner, name, "", False)
            return

        fingerprint = hashlib.sha256(
            f"{salt}\0{name}\0{int(user.password_is_encrypted)}\0{user.password}".encode()
        ).hexdigest()
        if not created and fingerprints.get(name) == fingerprint:
            return
        if not created and user.password_is_encrypted:
            if await accounts.fncGetShadowHash(self.runner, name) == user.password:
                fingerprints[name] = fingerprint
                return

        logging.debug("Updating the password for user '%s'", name)
        await accounts.fncSetPassword(self.runner, name, user.password, user.password_is_encrypted)
        fingerprints[name] = fingerprint

    async def _sync_group(self, group: GroupAccount):
        current = await accounts.fncGetGroup(self.runner, group.name)
        if current is None:
            logging.debug("Creating group '%s' with GID '%s'", group.name, group.gid)
            await accounts.fncCreateGroup(self.runner, group.name, group.gid)
            current = await accounts.fncGetGroup(self.runner, group.name)
            if current is None:
                raise ValueError(f"group '{group.name}' still missing after groupadd")

        current_gid, members = current
        if group.gid is not None and current_gid != group.gid:
            logging.debug("Updating group '%s' with GID '%s'", group.name, group.gid)
            await accounts.fncSetGroupId(self.runner, group.name, group.gid)

        desired = list(dict.fromkeys(group.users))
        for user in desired:
            if user in members:
                continue
            if not await accounts.fncUserExists(self.runner, user):
                logging.debug("Not adding missing user '%s' to '%s'", user, group.name)
                continue
            await accounts.fncGroupAddUser(self.runner, group.name, user)

        for user in members:
            if user not in desired:
                await accounts.fncGroupRemoveUser(self.runner, group.name, user)
