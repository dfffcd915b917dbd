# Module: pam.py
# Wires PAM session events back to us:
#   common-session  -> @include sftp-hook
#   sftp-hook       -> session required pam_exec.so scripts/sftp-pam-event.sh
#   the script      -> curl http://localhost:<port>/api/events/pam/generic?...

import logging
import os

from sftpmatic.fsutil import fncEnsureOwnership, fncReadText, fncSafeWriteAtomic

HOOK_NAME = "sftp-hook"
SCRIPT_NAME = "sftp-pam-event.sh"
COMMON_SESSION = "common-session"
EVENT_PATH = "/api/events/pam/generic"


def fncRenderEventScript(port: int) -> str:
    return ("#!/bin/sh\n"
            f'curl -s -o /dev/null "http://localhost:{port}{EVENT_PATH}'
            '?username=$PAM_USER&type=$PAM_TYPE&service=$PAM_SERVICE"\n')


def fncRenderHookFile(script_path: str) -> str:
    return ("# This file is used to signal the SFTP service on user events.\n"
            f"session required pam_exec.so {script_path}\n")

# Function: fncInstallPamHook
# Purpose : Write the event script and PAM include, then hook it into common-session once.
# Notes   : Rewrites only what differs; a missing common-session is created.
async def fncInstallPamHook(runner, pam_dir: str, port: int):
    logging.debug("Installing PAM hook")
    script = os.path.join(pam_dir, "scripts", SCRIPT_NAME)
    hook = os.path.join(pam_dir, HOOK_NAME)

    content = fncRenderEventScript(port)
    if fncReadText(script) != content:
        fncSafeWriteAtomic(script, content, 0o755)
    await fncEnsureOwnership(runner, script, owner="root", group="root", mode=0o755)

    content = fncRenderHookFile(script)
    if fncReadText(hook) != content:
        fncSafeWriteAtomic(hook, content, 0o644)
    await fncEnsureOwnership(runner, hook, owner="root", group="root", mode=0o644)

    common = os.path.join(pam_dir, COMMON_SESSION)
    include = f"@include {HOOK_NAME}"
    current = fncReadText(common) or ""
    if include not in current.splitlines():
        with open(common, "a") as f:
            if current and not current.endswith("\n"):
                f.write("\n")
            f.write(include + "\n")
        logging.info("Added '%s' to %s", include, common)
