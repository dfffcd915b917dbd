# Module: hostkeys.py
# Makes sure the daemon has host keys before every (re)start:
# - /etc/ssh/keys is the import dir (survives container rebuilds / is mounted)
# - each required key type is taken from the dir, else written from config, else generated
# - everything in the import dir is then installed into /etc/ssh as root-only files

import dataclasses
import logging
import os
import shutil
from typing import Callable

from sftpmatic.errors import CommandError, HostKeyError
from sftpmatic.model import DesiredState, HostKeyMaterial


@dataclasses.dataclass(frozen=True)
class HostKeyType:
    name: str
    file: str
    keygen_args: tuple[str, ...]
    material: Callable[[HostKeyMaterial], str]


HOST_KEY_TYPES = (
    HostKeyType("ed25519", "ssh_host_ed25519_key", ("-t", "ed25519"), lambda keys: keys.ed25519),
    HostKeyType("rsa", "ssh_host_rsa_key", ("-t", "rsa", "-b", "4096"), lambda keys: keys.rsa),
)


class HostKeyManager:
    def __init__(self, runner, import_dir: str, live_dir: str):
        self.runner = runner
        self.import_dir = import_dir
        self.live_dir = live_dir

    # Function: refresh
    # Purpose : Ensure every key type exists in the import dir, then install them all.
    # Notes   : Any failure raises HostKeyError; the daemon must not start without keys.
    async def refresh(self, state: DesiredState):
        logging.debug("Updating host key files")
        try:
            os.makedirs(self.import_dir, exist_ok=True)
            for key_type in HOST_KEY_TYPES:
                await self._ensure_key(key_type, state.global_policy.host_keys)
            await self._install_all()
        except (OSError, CommandError) as e:
            raise HostKeyError(f"Host key update failed: {e}") from e

    async def _ensure_key(self, key_type: HostKeyType, keys: HostKeyMaterial):
        path = os.path.join(self.import_dir, key_type.file)
        if os.path.exists(path):
            return

        material = key_type.material(keys)
        if material:
            logging.debug("Writing host key file '%s' from config", path)
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w") as f:
                f.write(material if material.endswith("\n") else material + "\n")
            return

        logging.info("Generating %s host key '%s'", key_type.name, path)
        await self.runner.run("ssh-keygen", [*key_type.keygen_args, "-f", path, "-N", ""])

    async def _install_all(self):
        os.makedirs(self.live_dir, exist_ok=True)
        for name in sorted(os.listdir(self.import_dir)):
            source = os.path.join(self.import_dir, name)
            if not os.path.isfile(source):
                continue
            target = os.path.join(self.live_dir, name)
            logging.debug("Copying '%s' to '%s'", source, target)
            shutil.copyfile(source, target)
            await self.runner.run("chown", ["root:root", target])
            await self.runner.run("chmod", ["600", target])
