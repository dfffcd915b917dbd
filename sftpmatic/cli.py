# Module: cli.py
# `sftpmatic` / `python -m sftpmatic`
# - preflight (python version, root, umask, logging, single-instance lock)
# - serve the FastAPI app with uvicorn; the app's lifespan runs the service
# - --render prints the sshd_config the current document would produce, then exits

import argparse
import fcntl
import json
import logging
import os
import sys

from sftpmatic import __version__
from sftpmatic.logs import fncPrintMessage, fncSetupLogging
from sftpmatic.model import fncBuildDesiredState
from sftpmatic.settings import ADMIN_REQUIRED, MIN_PYTHON_VERSION, Settings
from sftpmatic.sshd_config import fncRenderSshdConfig

# Lockfile so two supervisors don't fight over sshd
_LOCK_FH = None


def fncParseArgs(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="sftpmatic", description="SFTP user, chroot and sshd supervisor")
    p.add_argument("--config", help="Path to the JSON configuration document")
    p.add_argument("--host", help="HTTP listen address for the PAM event endpoint")
    p.add_argument("--port", type=int, help="HTTP listen port")
    p.add_argument("--log-level", help="DEBUG, INFO, WARNING, ...")
    p.add_argument("--render", action="store_true",
                   help="Print the sshd_config for the current document and exit")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return p.parse_args(argv)

# Function: fncApplyArgs
# Purpose : Command-line flags win over env and defaults.
def fncApplyArgs(settings: Settings, args: argparse.Namespace) -> Settings:
    if args.config:
        settings.config_path = args.config
    if args.host:
        settings.http_host = args.host
    if args.port:
        settings.http_port = args.port
    if args.log_level:
        settings.log_level = args.log_level.upper()
    return settings

# Function: fncCheckPyVersion
# Purpose : Fail fast on unsupported Python versions.
# Notes   : Requires Python >= MIN_PYTHON_VERSION.
def fncCheckPyVersion():
    if sys.version_info < MIN_PYTHON_VERSION:
        wanted = ".".join(str(x) for x in MIN_PYTHON_VERSION)
        fncPrintMessage(f"SFTPmatic requires Python {wanted} or higher. Please upgrade.", "error")
        sys.exit(1)

# Function: fncAdminCheck
# Purpose : Ensure the process runs as root when ADMIN_REQUIRED is True.
# Notes   : useradd/chown/sshd all need it; exits if not root.
def fncAdminCheck():
    if ADMIN_REQUIRED and os.geteuid() != 0:
        fncPrintMessage("SFTPmatic manages system accounts and sshd; run it as root.", "error")
        sys.exit(1)

def fncAcquireLock(lock_path: str):
    """Acquire an exclusive lock to prevent concurrent supervisors."""
    os.makedirs(os.path.dirname(lock_path), exist_ok=True)
    global _LOCK_FH
    try:
        _LOCK_FH = open(lock_path, "w")
        os.chmod(lock_path, 0o600)
        fcntl.lockf(_LOCK_FH, fcntl.LOCK_EX | fcntl.LOCK_NB)
        logging.debug("Acquired lock: %s", lock_path)
    except BlockingIOError:
        fncPrintMessage("Another instance of sftpmatic is already running.", "warning")
        sys.exit(1)
    except OSError as e:
        fncPrintMessage(f"Failed to acquire lock ({lock_path}): {e}", "error")
        sys.exit(1)

# Function: fncRender
# Purpose : Print the sshd_config the configuration document would produce.
# Notes   : Read-only; touches nothing on the system.
def fncRender(settings: Settings) -> int:
    try:
        with open(settings.config_path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        fncPrintMessage(f"Could not read {settings.config_path}: {e}", "error")
        return 1
    state = fncBuildDesiredState(raw)
    sys.stdout.write(fncRenderSshdConfig(state, settings.ssh_dir, settings.home_base))
    return 0

def fncServe(settings: Settings):
    import uvicorn

    from sftpmatic.api import create_app
    from sftpmatic.service import SftpService

    app = create_app(SftpService(settings), handle_sighup=True)
    uvicorn.run(app, host=settings.http_host, port=settings.http_port,
                log_level=settings.log_level.lower(), log_config=None)

# Function: fncMain
# Purpose : Program entrypoint; preflight checks, logging, locking, serve, robust error handling.
# Notes   : Uses umask(077) to protect any new files.
def fncMain(argv=None):
    args = fncParseArgs(argv)
    settings = fncApplyArgs(Settings.from_env(), args)
    try:
        if args.render:
            fncSetupLogging(settings.log_file, "WARNING", to_file=False)
            sys.exit(fncRender(settings))

        os.umask(0o077)
        fncAdminCheck()
        fncSetupLogging(settings.log_file, settings.log_level)
        fncAcquireLock(settings.lock_path)
        fncServe(settings)
    except KeyboardInterrupt:
        fncPrintMessage("Bye then...", "error")
        sys.exit(0)
    except Exception as e:
        logging.exception("Unhandled exception: %s", e)
        sys.exit(1)


def fncEntry():
    fncCheckPyVersion()
    fncMain()
