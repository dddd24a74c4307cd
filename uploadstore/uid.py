"""Random upload identifiers."""

import secrets


def uid() -> str:
    """Return 128 random bits from a strong source, hex encoded (32 characters)."""
    return secrets.token_hex(16)