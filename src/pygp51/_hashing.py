"""Password hashing for the GP51 login action."""

from __future__ import annotations

import hashlib


def md5_hex(value: str) -> str:
    """Compute MD5 of a UTF-8 string, returning lowercase hex.

    GP51 expects the login password as a 32-character lowercase digest.

    Parameters
    ----------
    value : str
        The string to hash.

    Returns
    -------
    str
        32-character lowercase hex digest.
    """
    return hashlib.md5(value.encode("utf-8")).hexdigest()


def is_md5_hex(value: str) -> bool:
    """Whether *value* already looks like an MD5 hex digest."""
    stripped = value.strip()
    return len(stripped) == 32 and all(ch in "0123456789abcdefABCDEF" for ch in stripped)
