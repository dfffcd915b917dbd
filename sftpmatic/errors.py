class SftpmaticError(Exception):
    """Base for everything SFTPmatic raises on purpose."""


class CommandError(SftpmaticError):
    def __init__(self, cmd: list[str], rc: int, output: str):
        self.cmd = cmd
        self.rc = rc
        self.output = output
        super().__init__(f"{' '.join(cmd)} failed with exit code {rc}: {output}".strip())


class ConfigError(SftpmaticError):
    pass


class HostKeyError(SftpmaticError):
    pass


class SupervisorError(SftpmaticError):
    pass
