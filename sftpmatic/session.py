# Module: session.py
# Session Preparer: runs when PAM tells us a session is opening.
# - chroot root exists and is root-owned 755 (sshd insists on that)
# - each configured directory exists inside it and belongs to the user
# - authorized_keys is regenerated so newly dropped key files work on next login
# Accounts that aren't in the config (externally authenticated) get the global policy.

import logging
import os

from sftpmatic.authorized_keys import fncWriteAuthorizedKeys
from sftpmatic.errors import SftpmaticError
from sftpmatic.events import EventBus, UserSessionChanged
from sftpmatic.fsutil import (fncChainToRoot, fncEnsureDir, fncEnsureOwnership,
                              fncIsDescendant, fncResolveChrootPath)
from sftpmatic.model import UserAccount

OPEN_SESSION = "open_session"
CHROOT_ROOT_MODE = 0o755   # sshd refuses a chroot root that is group or world writable


class SessionPreparer:
    def __init__(self, settings, runner, store, bus: EventBus):
        self.settings = settings
        self.runner = runner
        self.store = store
        self.bus = bus

    # Function: prepare
    # Purpose : Build the chroot, directories and authorized_keys for one user.
    # Notes   : A failing directory is logged and skipped; chroot root and keys failures raise.
    async def prepare(self, username: str):
        state = self.store.get()
        user = state.user(username)
        if user is None:
            logging.info("User '%s' is not in the configuration; using global settings", username)
            user = UserAccount(username=username)

        home = self.settings.home_dir(username)
        chroot = state.effective_chroot(user)
        chroot_root = os.path.normpath(fncResolveChrootPath(chroot.directory, home, username))
        logging.debug("Ensuring chroot directory '%s' exists and is owned by root", chroot_root)
        fncEnsureDir(chroot_root)
        await fncEnsureOwnership(self.runner, chroot_root, owner="root", group="root", mode=CHROOT_ROOT_MODE)

        directories = sorted(set(state.global_policy.directories) | set(user.directories))
        for directory in directories:
            path = os.path.normpath(os.path.join(chroot_root, directory))
            try:
                await self._prepare_directory(path, chroot_root, username)
            except (SftpmaticError, OSError) as e:
                logging.error("Failed to prepare directory '%s' for user '%s': %s", path, username, e)

        await fncWriteAuthorizedKeys(self.runner, home, username, user.public_keys)

    async def _prepare_directory(self, path: str, chroot_root: str, username: str):
        owner, group = username, self.settings.inventory_group
        if fncEnsureDir(path):
            logging.debug("Created directory '%s'", path)

        if fncIsDescendant(path, chroot_root):
            for p in fncChainToRoot(path, chroot_root):
                await fncEnsureOwnership(self.runner, p, owner=owner, group=group)
            return

        logging.warning("Directory '%s' is not within chroot path '%s'. Setting direct permissions.",
                        path, chroot_root)
        await fncEnsureOwnership(self.runner, path, owner=owner, group=group)

    # Function: handle_pam_event
    # Purpose : Entry point for the PAM HTTP hook.
    # Notes   : False on blank username or a failed preparation; hooks still hear about
    #           every accepted event.
    async def handle_pam_event(self, username: str | None, event_type: str | None,
                               service: str | None) -> bool:
        username = (username or "").strip()
        event_type = (event_type or "").strip()
        if not username:
            logging.warning("Ignoring PAM event without a username (type '%s')", event_type)
            return False

        logging.info("Received PAM event for user '%s' with type '%s' (service '%s')",
                     username, event_type, service or "")
        if event_type == OPEN_SESSION:
            try:
                await self.prepare(username)
            except (SftpmaticError, OSError, RuntimeError) as e:
                logging.error("Failed to prepare session for user '%s': %s", username, e)
                return False

        await self.bus.publish(UserSessionChanged(username, event_type))
        return True
