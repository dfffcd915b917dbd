"""SFTPmatic: declarative SFTP users, chroots and a supervised sshd."""

__version__ = "1.0.0"
