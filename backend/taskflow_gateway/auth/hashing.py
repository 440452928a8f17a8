"""
Bearer token format.

A token is `tf_` followed by 64 lowercase hex characters (32 random bytes).
Only the SHA-256 digest of the full string is persisted; a fast hash is
enough because the input is uniformly random, not a user-chosen secret.
The first few characters are the token's public face in logs and the
auth_tokens.prefix column.
"""

import hashlib
import re
import secrets

TOKEN_PREFIX = "tf_"
TOKEN_BYTES = 32
DISPLAY_PREFIX_LEN = len(TOKEN_PREFIX) + 8

_TOKEN_RE = re.compile(rf"{TOKEN_PREFIX}[0-9a-f]{{{TOKEN_BYTES * 2}}}")


def hash_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def is_well_formed(raw_token: str) -> bool:
    """True when `raw_token` could have been produced by generate_token()."""
    return _TOKEN_RE.fullmatch(raw_token) is not None


def generate_token() -> tuple[str, str]:
    """Return `(raw_token, token_hash)`. The raw value is handed out once and dropped."""
    raw_token = TOKEN_PREFIX + secrets.token_hex(TOKEN_BYTES)
    return raw_token, hash_token(raw_token)


def display_prefix(raw_token: str) -> str:
    return raw_token[:DISPLAY_PREFIX_LEN]
