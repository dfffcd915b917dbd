# Module: runner.py
# Everything that leaves the process goes through CommandRunner:
# - run():       pinned binary (or absolute path), merged stdout/stderr, exit code, timeout
# - spawn():     long-lived child in its own session (sshd), output piped for streaming
# - kill_tree(): SIGKILL the child's whole process group and reap it
# Tests swap in a fake with the same three methods.

import asyncio
import logging
import os
import signal

from sftpmatic.errors import CommandError

RC_NOT_FOUND = 127
RC_TIMEOUT = 124


class CommandRunner:
    def __init__(self, bins: dict[str, str], timeout: float | None = 120.0):
        self.bins = bins
        self.timeout = timeout

    # Function: resolve
    # Purpose : Map a logical command key to a pinned binary.
    # Notes   : Absolute paths (hook scripts) pass straight through.
    def resolve(self, cmdkey: str) -> str | None:
        if os.path.isabs(cmdkey):
            return cmdkey
        return self.bins.get(cmdkey)

    # Function: run
    # Purpose : Execute a command; capture rc + merged output.
    # Notes   : Returns (returncode, output). check=True raises CommandError on rc != 0.
    #           Missing binary -> 127, timeout -> 124 (killed), same as a failed run.
    async def run(self, cmdkey: str, args: list[str] | None = None, *, check: bool = True,
                  input: str | None = None, timeout: float | None = None) -> tuple[int, str]:
        exe = self.resolve(cmdkey)
        cmd = [exe or cmdkey] + [str(a) for a in (args or [])]
        logging.debug("Running: %s", " ".join(cmd))

        if not exe or not os.path.exists(exe):
            rc, out = RC_NOT_FOUND, f"binary not found: {cmdkey} -> {exe}"
        else:
            rc, out = await self._exec(cmd, input, timeout if timeout is not None else self.timeout)

        if rc != 0 and check:
            raise CommandError(cmd, rc, out)
        return rc, out

    async def _exec(self, cmd: list[str], input: str | None, timeout: float | None) -> tuple[int, str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            return RC_NOT_FOUND, str(e)

        data = input.encode() if input is not None else None
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(data), timeout)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            logging.error("Command timed out after %ss: %s", timeout, " ".join(cmd))
            return RC_TIMEOUT, "timeout"
        return proc.returncode, stdout.decode(errors="replace").strip()

    # Function: spawn
    # Purpose : Start a supervised child with merged, line-readable output.
    # Notes   : New session so kill_tree() can take out anything it forks.
    async def spawn(self, cmdkey: str, args: list[str] | None = None) -> asyncio.subprocess.Process:
        exe = self.resolve(cmdkey)
        if not exe or not os.path.exists(exe):
            raise CommandError([exe or cmdkey], RC_NOT_FOUND, f"binary not found: {cmdkey} -> {exe}")
        cmd = [exe] + [str(a) for a in (args or [])]
        logging.debug("Spawning: %s", " ".join(cmd))
        return await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )

    async def kill_tree(self, proc: asyncio.subprocess.Process):
        if proc.returncode is None:
            try:
                os.killpg(proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            except PermissionError:
                proc.kill()
        await proc.wait()
