from __future__ import annotations

import secrets
import string

# Column limit of the ledger system's transaction number field.
MAX_NUMBER_LENGTH = 15
SUFFIX_LENGTH = 4
SUFFIX_ALPHABET = string.ascii_letters + string.digits


def random_suffix(length: int = SUFFIX_LENGTH) -> str:
    """Random alphanumeric suffix. Letter case is significant for uniqueness."""
    return "".join(secrets.choice(SUFFIX_ALPHABET) for _ in range(length))


def build_transaction_number(grouping_key: str, suffix: str, *, max_length: int = MAX_NUMBER_LENGTH) -> str:
    room = max_length - len(suffix) - 1
    if room < 1:
        msg = f"suffix {suffix!r} leaves no room for a prefix within {max_length} characters"
        raise ValueError(msg)

    prefix = grouping_key.strip()[:room].rstrip()
    if not prefix:
        msg = "grouping_key must contain non-whitespace characters"
        raise ValueError(msg)
    return f"{prefix} {suffix}"


__all__ = ["MAX_NUMBER_LENGTH", "SUFFIX_LENGTH", "build_transaction_number", "random_suffix"]
