from typing import Tuple

from pairchat.exceptions import InvalidPairing


KEY_PREFIX = "dm:"
SEPARATOR = "|"


def derive_key(id_a: str, id_b: str) -> str:
    """
    Canonical key for the conversation between two participants.

    The pair is sorted before joining, so argument order never matters. Ids may
    not contain the separator, which keeps distinct pairs from colliding.
    """
    for pid in (id_a, id_b):
        if not isinstance(pid, str) or not pid.strip():
            raise InvalidPairing("Participant id cannot be empty")
        if SEPARATOR in pid:
            raise InvalidPairing(f"Participant id cannot contain {SEPARATOR!r}: {pid!r}")
    if id_a == id_b:
        raise InvalidPairing("Cannot open a conversation with yourself")
    first, second = sorted([id_a, id_b])
    return f"{KEY_PREFIX}{first}{SEPARATOR}{second}"


def split_key(key: str) -> Tuple[str, str]:
    if not key or not key.startswith(KEY_PREFIX):
        raise InvalidPairing(f"Not a conversation key: {key!r}")
    parts = key[len(KEY_PREFIX):].split(SEPARATOR)
    if len(parts) != 2:
        raise InvalidPairing(f"Not a conversation key: {key!r}")
    # round-trip guards against unsorted or self-paired keys
    if derive_key(parts[0], parts[1]) != key:
        raise InvalidPairing(f"Not a canonical conversation key: {key!r}")
    return parts[0], parts[1]
