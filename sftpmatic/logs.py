# Module: logs.py
# - File + stdout logging (INFO for changes, DEBUG for sshd chatter and command traces)
# - Logrotate snippet so the log doesn't grow forever
# - Coloured console messages for the humans running the CLI/installer

import logging
import os
import sys

from colorama import Fore, Style

LOGROTATE_PATH = "/etc/logrotate.d/sftpmatic"

# Function: fncBootstrapLogDir
# Purpose : Create the log directory with conservative permissions.
# Notes   : Safe to call multiple times.
def fncBootstrapLogDir(log_file: str):
    d = os.path.dirname(log_file)
    if d:
        os.makedirs(d, exist_ok=True)
        os.chmod(d, 0o750)

# Function: fncEnsureLogrotate
# Purpose : Drop a logrotate file for the service log.
# Notes   : Creates once; ignores errors (warns only).
def fncEnsureLogrotate(log_file: str, path: str = LOGROTATE_PATH):
    content = f"""{log_file} {{
  weekly
  rotate 8
  compress
  missingok
  notifempty
  copytruncate
  create 0640 root root
}}
"""
    try:
        if not os.path.exists(path):
            with open(path, "w") as f:
                f.write(content)
            os.chmod(path, 0o644)
    except Exception as e:
        logging.warning("Couldn't write logrotate file (%s): %s", path, e)

# Function: fncSetupLogging
# Purpose : Configure logging to file and stdout; ensure paths & logrotate exist.
# Notes   : File logging is skipped (stdout only) when to_file is False, e.g. --render.
def fncSetupLogging(log_file: str, level: str = "INFO", to_file: bool = True):
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if to_file:
        fncBootstrapLogDir(log_file)
        handlers.insert(0, logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
        handlers=handlers,
        force=True,
    )
    logging.info("---- SFTPmatic start ----")
    if to_file:
        fncEnsureLogrotate(log_file)

# Function: fncPrintMessage
# Purpose : Human-friendly colored console messages.
# Notes   : Used for important user-facing prints (not logs).
def fncPrintMessage(message, msg_type="info"):
    styles = {
        "info":    Fore.CYAN  + "{~} ",
        "warning": Fore.YELLOW + "{!} ",
        "success": Fore.GREEN + "{=]} ",
        "error":   Fore.RED   + "{!} ",
        "disabled":Fore.LIGHTBLACK_EX + "{X} ",
    }
    print(f"{styles.get(msg_type, Fore.WHITE)}{message}{Style.RESET_ALL}")
