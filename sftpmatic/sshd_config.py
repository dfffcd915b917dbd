# Module: sshd_config.py
# DesiredState -> sshd_config text. Pure and deterministic: same state, same bytes.
#
# sshd keeps the first value it obtains for each keyword, so the per-user Match blocks
# go first and the "Match User *" catch-all goes last.

import dataclasses
import os

from sftpmatic.fsutil import fncResolveChrootPath
from sftpmatic.model import ChrootPolicy, DesiredState

HOST_KEY_FILES = ["ssh_host_ed25519_key", "ssh_host_rsa_key"]
STANDARD_DECLARATIONS = ["X11Forwarding no", "AllowTcpForwarding no"]
SSHD_LOG_LEVEL = "INFO"


@dataclasses.dataclass
class MatchBlock:
    criteria: str
    patterns: list[str]
    declarations: list[str]

    def render(self) -> str:
        patterns = ",".join(dict.fromkeys(p.strip() for p in self.patterns if p.strip()))
        lines = [f"Match {self.criteria} {patterns}"]
        lines += [d.strip() for d in self.declarations if d.strip()]
        return "\n".join(lines) + "\n"


def _force_command(start_path: str | None) -> str:
    return f"ForceCommand internal-sftp -d {start_path}" if start_path else "ForceCommand internal-sftp"


def _sshd_escape(path: str) -> str:
    # sshd expands %-tokens in ChrootDirectory; a resolved path must reach it literally
    return path.replace("%", "%%")


def _chroot_block(patterns: list[str], directory: str, chroot: ChrootPolicy) -> MatchBlock:
    return MatchBlock(
        criteria="User",
        patterns=patterns,
        declarations=STANDARD_DECLARATIONS + [
            f"ChrootDirectory {directory}",
            _force_command(chroot.start_path),
        ],
    )

# Function: fncAllowUsersEntry
# Purpose : AllowUsers token for one user, host-restricted when configured.
def fncAllowUsersEntry(username: str, allowed_hosts) -> str:
    return f"{username}@{','.join(allowed_hosts)}" if allowed_hosts else username

# Function: fncRenderSshdConfig
# Purpose : Render the complete sshd_config for a DesiredState.
# Notes   : Per-user blocks only for users whose chroot wasn't collapsed into the global one,
#           in configuration order, always before the catch-all.
def fncRenderSshdConfig(state: DesiredState, ssh_dir: str, home_base: str) -> str:
    gp = state.global_policy
    out: list[str] = [""]

    out.append("UsePAM yes")
    out.append("# SSH Protocol")
    out.append("Protocol 2")
    out.append("")
    out.append("# Host Keys")
    for name in HOST_KEY_FILES:
        out.append(f"HostKey {os.path.join(ssh_dir, name)}")
    out.append("")
    out.append("# Cryptographic policy")
    for keyword, value in (("Ciphers", gp.ciphers),
                           ("HostKeyAlgorithms", gp.host_key_algorithms),
                           ("KexAlgorithms", gp.kex_algorithms),
                           ("MACs", gp.macs)):
        if value:
            out.append(f"{keyword} {value}")
    out.append("")
    out.append("# Disable DNS for fast connections")
    out.append("UseDNS no")
    out.append("")
    out.append("# Logging")
    out.append(f"LogLevel {SSHD_LOG_LEVEL}")
    out.append("")
    out.append("# Subsystem")
    out.append("Subsystem sftp internal-sftp")
    out.append("")
    out.append("# Allowed users")
    if state.users:
        out.append("AllowUsers " + " ".join(fncAllowUsersEntry(u.username, u.allowed_hosts) for u in state.users))
    else:
        # AllowUsers needs at least one pattern; nobody configured means nobody gets in
        out.append("DenyUsers *")
    out.append("")
    if gp.pki_and_password:
        out.append('AuthenticationMethods "publickey,password"')
        out.append("")

    blocks: list[MatchBlock] = []
    for user in state.users:
        if user.chroot is None:
            continue
        resolved = fncResolveChrootPath(user.chroot.directory, os.path.join(home_base, user.username), user.username)
        blocks.append(_chroot_block([user.username], _sshd_escape(resolved), user.chroot))
    blocks.append(_chroot_block(["*"], gp.chroot.directory, gp.chroot))

    out.append("# Match blocks")
    text = "\n".join(out) + "\n"
    return text + "\n".join(b.render() for b in blocks)
