# Module: secretbox.py
# Passwords / host keys in the config document may be "fernet:<token>" instead of plaintext.
# The key comes from SFTPMATIC_ENC_KEY (systemd loads it from /etc/sftpmatic.key).

import logging
import os

ENC_KEY_ENV = "SFTPMATIC_ENC_KEY"
FERNET_PREFIX = "fernet:"


def fncIsEncrypted(value: str | None) -> bool:
    return bool(value) and value.startswith(FERNET_PREFIX)

# Function: fncDecryptSecret
# Purpose : Resolve a config secret (plaintext or Fernet-encrypted).
# Notes   : Plain values pass through. Decrypt failures log and return "" (never raise).
def fncDecryptSecret(value: str | None, what: str = "secret", key_b64: str | None = None) -> str:
    if not value:
        return ""
    if not fncIsEncrypted(value):
        return value

    from cryptography.fernet import Fernet, InvalidToken

    key_b64 = (key_b64 or os.getenv(ENC_KEY_ENV, "")).strip()
    if not key_b64:
        logging.error("Missing %s for decrypting %s", ENC_KEY_ENV, what)
        return ""
    try:
        token = value.split(":", 1)[1]
        return Fernet(key_b64.encode()).decrypt(token.encode()).decode()
    except (InvalidToken, ValueError) as e:
        logging.error("Failed to decrypt %s: %s", what, str(e) or "invalid token")
        return ""

def fncEncryptSecret(secret: str, key_b64: str) -> str:
    from cryptography.fernet import Fernet
    token = Fernet(key_b64.encode()).encrypt(secret.encode()).decode()
    return f"{FERNET_PREFIX}{token}"
