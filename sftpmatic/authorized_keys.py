# Module: authorized_keys.py
# ~/.ssh/authorized_keys is generated, never hand-edited:
#   every file dropped into ~/.ssh/keys/  +  the PublicKeys listed in the config.

import logging
import os

from sftpmatic.fsutil import fncEnsureOwnership, fncReadText, fncSafeWriteAtomic

# Function: fncCollectPublicKeys
# Purpose : Gather imported key files (sorted) followed by literal configured keys.
def fncCollectPublicKeys(keys_dir: str, username: str, literal_keys) -> list[str]:
    keys: list[str] = []
    if os.path.isdir(keys_dir):
        for name in sorted(os.listdir(keys_dir)):
            path = os.path.join(keys_dir, name)
            if not os.path.isfile(path):
                continue
            logging.debug("Adding public key '%s' for user '%s'", path, username)
            text = fncReadText(path) or ""
            keys += [line.strip() for line in text.splitlines() if line.strip()]
    for key in literal_keys:
        logging.debug("Adding public key from config for user '%s'", username)
        keys.append(key.strip())
    return keys

# Function: fncWriteAuthorizedKeys
# Purpose : Regenerate a user's authorized_keys, user-owned and read-only.
# Notes   : Only rewrites/chowns when content or ownership actually differ.
async def fncWriteAuthorizedKeys(runner, home: str, username: str, literal_keys) -> bool:
    ssh_dir = os.path.join(home, ".ssh")
    keys_dir = os.path.join(ssh_dir, "keys")
    os.makedirs(keys_dir, exist_ok=True)

    path = os.path.join(ssh_dir, "authorized_keys")
    keys = fncCollectPublicKeys(keys_dir, username, literal_keys)
    content = "".join(k + "\n" for k in keys)

    changed = False
    if fncReadText(path) != content:
        fncSafeWriteAtomic(path, content, 0o400)
        logging.info("Updated authorized_keys for %s (%d key(s))", username, len(keys))
        changed = True
    changed |= await fncEnsureOwnership(runner, path, owner=username, mode=0o400)
    return changed
