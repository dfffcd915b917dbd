# Module: installer.py
# `sftpmatic-install install|uninstall|encrypt-secret`
# - install:        key file, env file, sample config, log dir, systemd unit, enable --now
# - uninstall:      stop/disable/remove the unit; --purge also removes config, keys, logs, state
# - encrypt-secret: turn a password or host key into a fernet:<token> for the config document

import argparse
import getpass
import json
import os
import shutil
import subprocess
import sys
from base64 import urlsafe_b64encode
from pathlib import Path

from colorama import Fore as F, Style as S, init as _cinit

from sftpmatic import __version__
from sftpmatic.logs import LOGROTATE_PATH
from sftpmatic.secretbox import ENC_KEY_ENV, fncEncryptSecret
from sftpmatic.settings import CONFIG_PATH, HTTP_PORT, LOG_FILE, STATE_DIR

# ============================
# Paths & constants
# ============================
SERVICE_NAME = "sftpmatic.service"
SERVICE = Path("/etc/systemd/system") / SERVICE_NAME
ENVFILE = Path("/etc/sftpmatic.env")
KEYFILE = Path("/etc/sftpmatic.key")      # separate env file, 0600
CONFIG = Path(CONFIG_PATH)
LOGDIR = Path(LOG_FILE).parent

SAMPLE_CONFIG = {
    "Global": {
        "Chroot": {"Directory": "%h", "StartPath": "sftp"},
        "Directories": ["sftp"],
        "Logging": {"IgnoreNoIdentificationString": True},
        "Hooks": {"OnServerStartup": [], "OnSessionChange": []},
    },
    "Users": [],
    "Groups": [],
}

# ============================
# Colour / output helpers
# ============================
_cinit(autoreset=True)

_COLOR_MONO = False

def fncSetColorMode(monochrome: bool):
    """Call once after parsing args to disable colours when needed."""
    global _COLOR_MONO
    _COLOR_MONO = bool(monochrome)

def fncWantColor(stream=sys.stdout):
    """Decide if we should output ANSI colours."""
    if _COLOR_MONO or os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("FORCE_COLOR"):
        return True
    try:
        return stream.isatty()
    except (AttributeError, ValueError):
        return False

def fncColor(text: str, *styles: str) -> str:
    """fncColor('Hello', 'green', 'bold') -> styled text (or plain if disabled)."""
    if not fncWantColor() or not styles:
        return text
    m = {
        "red": F.RED, "green": F.GREEN, "yellow": F.YELLOW, "cyan": F.CYAN,
        "magenta": F.MAGENTA, "white": F.WHITE, "bold": S.BRIGHT,
    }
    seq = "".join(m.get(s, "") for s in styles)
    return f"{seq}{text}{S.RESET_ALL}"

def fncHeading(msg: str): print(fncColor(msg, "magenta", "bold"))
def fncInfo(msg: str):    print(fncColor("[*] ", "cyan") + msg)
def fncOk(msg: str):      print(fncColor("[+] ", "green") + msg)
def fncWarn(msg: str):    print(fncColor("[!] ", "yellow") + msg)
def fncErr(msg: str):     print(fncColor("[-] ", "red") + msg)

# ============================
# Core helpers
# ============================
def fncRequireRoot():
    if os.geteuid() != 0:
        fncErr("This installer must be run as root (try sudo)")
        sys.exit(1)

def fncRun(cmd: list[str]):
    fncInfo(f"Running: {' '.join(cmd)}")
    subprocess.run(cmd, check=True)

def fncEnsureKeyfile():
    """Ensure the key file exists with a Fernet key (mode 0600)."""
    try:
        if KEYFILE.exists():
            os.chmod(KEYFILE, 0o600)
            return
        key_b64 = urlsafe_b64encode(os.urandom(32)).decode()   # 32 bytes -> Fernet key
        KEYFILE.write_text(f"{ENC_KEY_ENV}={key_b64}\n")
        os.chmod(KEYFILE, 0o600)
        fncOk(f"Created encryption key file {KEYFILE} (mode 0600)")
    except OSError as e:
        fncErr(f"Could not create {KEYFILE}: {e}")
        sys.exit(1)

def _fncParseKeyfile(path: Path) -> str | None:
    try:
        if not path.exists():
            return None
        for line in path.read_text().splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" in line:
                k, v = line.split("=", 1)
                if k.strip() == ENC_KEY_ENV:
                    return v.strip()
    except OSError:
        return None
    return None

def fncLoadEncKey() -> str | None:
    """Prefer env (runtime), else the key file."""
    val = os.environ.get(ENC_KEY_ENV, "").strip()
    if val:
        return val
    return _fncParseKeyfile(KEYFILE)

def fncBuildEnvfileContent() -> str:
    return f"""# SFTPmatic settings (SFTPMATIC_* overrides; see settings.py for the full list)
SFTPMATIC_CONFIG={CONFIG}
SFTPMATIC_LOG_LEVEL=INFO
SFTPMATIC_PORT={HTTP_PORT}
SFTPMATIC_INSTALL_PAM_HOOK=true
"""

def fncWriteEnvfile(content: str):
    if ENVFILE.exists():
        fncInfo(f"Keeping existing {ENVFILE}")
        return
    ENVFILE.write_text(content)
    os.chmod(ENVFILE, 0o600)
    fncOk("Wrote settings to " + fncColor(str(ENVFILE), "white", "bold") + " (mode 0600)")

def fncWriteSampleConfig():
    if CONFIG.exists():
        fncInfo(f"Keeping existing {CONFIG}")
        return
    CONFIG.parent.mkdir(mode=0o750, parents=True, exist_ok=True)
    CONFIG.write_text(json.dumps(SAMPLE_CONFIG, indent=2) + "\n")
    os.chmod(CONFIG, 0o600)
    fncOk(f"Wrote sample configuration {CONFIG}")

def fncRenderServiceUnit(python: str = sys.executable) -> str:
    return f"""[Unit]
Description=SFTPmatic - SFTP users, chroots and sshd supervisor
After=network-online.target
Wants=network-online.target

[Service]
Type=simple
EnvironmentFile=-{ENVFILE}
EnvironmentFile=-{KEYFILE}
ExecStart={python} -m sftpmatic
ExecReload=/bin/kill -HUP $MAINPID
Restart=on-failure
RestartSec=5
User=root

[Install]
WantedBy=multi-user.target
"""

def fncWriteUnits():
    SERVICE.write_text(fncRenderServiceUnit())
    fncOk(f"Wrote service unit: {SERVICE}")

# ============================
# Actions
# ============================
def fncDoInstall():
    fncRequireRoot()
    fncHeading("[*] Installing SFTPmatic...")

    fncEnsureKeyfile()  # key first so encrypt-secret works straight away

    LOGDIR.mkdir(mode=0o750, parents=True, exist_ok=True)
    fncOk(f"Ensured log directory {LOGDIR}")

    fncWriteEnvfile(fncBuildEnvfileContent())
    fncWriteSampleConfig()
    fncWriteUnits()

    fncRun(["systemctl", "daemon-reload"])
    fncRun(["systemctl", "enable", "--now", SERVICE_NAME])
    fncOk("Install complete. Edit " + fncColor(str(CONFIG), "white", "bold")
          + "; changes are picked up automatically.")

def fncDoUninstall(purge: bool = False):
    fncRequireRoot()
    fncHeading("[*] Uninstalling SFTPmatic...")

    for verb in ("stop", "disable"):
        try:
            fncRun(["systemctl", verb, SERVICE_NAME])
        except subprocess.CalledProcessError:
            fncWarn(f"systemctl {verb} {SERVICE_NAME} failed (not installed?)")

    try:
        if SERVICE.exists():
            SERVICE.unlink()
            fncOk(f"Removed {SERVICE}")
        else:
            fncInfo(f"Not present: {SERVICE}")
    except OSError as e:
        fncWarn(f"Could not remove {SERVICE}: {e}")

    try:
        fncRun(["systemctl", "daemon-reload"])
    except subprocess.CalledProcessError:
        fncWarn("Failed to reload systemd daemon")

    if not purge:
        fncInfo("Left config, keys, logs and state in place (use --purge to remove them)")
        return

    for p in (ENVFILE, KEYFILE, CONFIG, Path(LOGROTATE_PATH)):
        try:
            if p.exists():
                p.unlink()
                fncOk(f"Removed {p}")
        except OSError as e:
            fncWarn(f"Could not remove {p}: {e}")
    for d in (LOGDIR, Path(STATE_DIR)):
        shutil.rmtree(d, ignore_errors=True)
        fncOk(f"Removed {d}")

def fncDoEncryptSecret(secret: str | None = None) -> int:
    key = fncLoadEncKey()
    if not key:
        fncErr(f"No encryption key. Expected {ENC_KEY_ENV} in the environment or {KEYFILE}.")
        return 1
    if secret is None:
        secret = getpass.getpass("Secret to encrypt: ")
    if not secret:
        fncErr("Nothing to encrypt")
        return 1
    try:
        print(fncEncryptSecret(secret, key))
    except ValueError as e:
        fncErr(f"Encryption key is not a valid Fernet key: {e}")
        return 1
    return 0

def fncMain(argv=None):
    parser = argparse.ArgumentParser(prog="sftpmatic-install", description="Installer for SFTPmatic")
    parser.add_argument("action", choices=["install", "uninstall", "encrypt-secret"], help="Action to perform")
    parser.add_argument("--purge", action="store_true", help="Uninstall: also remove config, keys, logs and state")
    parser.add_argument("--secret", help="encrypt-secret: value to encrypt (prompted when omitted)")
    parser.add_argument("--no-color", action="store_true", help="Plain output")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    args = parser.parse_args(argv)
    fncSetColorMode(args.no_color)

    if args.action == "install":
        fncDoInstall()
    elif args.action == "uninstall":
        fncDoUninstall(purge=args.purge)
    elif args.action == "encrypt-secret":
        sys.exit(fncDoEncryptSecret(args.secret))

if __name__ == "__main__":
    fncMain()
