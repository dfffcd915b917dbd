from sftpmatic.cli import fncEntry

if __name__ == "__main__":
    fncEntry()
