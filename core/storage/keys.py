"""
Key layout helpers.

Record keys are <prefix>:<identifier>:<suffix>. Identifiers may contain the
delimiter themselves, so extraction strips the known prefix and suffix and
keeps everything in between.
"""

import time
from typing import Optional

DELIMITER = ":"
OBJECT_SUFFIX = "object"


def join(*parts: object, delimiter: str = DELIMITER) -> str:
    """Join key segments with the delimiter"""
    return delimiter.join(str(part) for part in parts)


def dbkey(prefix: str, identifier: str, suffix: Optional[str] = OBJECT_SUFFIX,
          delimiter: str = DELIMITER) -> str:
    if suffix:
        return join(prefix, identifier, suffix, delimiter=delimiter)
    return join(prefix, identifier, delimiter=delimiter)


def scan_pattern(prefix: str, suffix: Optional[str] = OBJECT_SUFFIX,
                 delimiter: str = DELIMITER) -> str:
    """MATCH pattern for every key built by dbkey(prefix, *, suffix)"""
    return dbkey(prefix, "*", suffix, delimiter=delimiter)


def extract_identifier(key: str, prefix: str, suffix: Optional[str] = OBJECT_SUFFIX,
                       delimiter: str = DELIMITER) -> Optional[str]:
    """
    Recover the identifier from a key built by dbkey.

    Args:
        key: Full key, e.g. "customer:a:b:object"
        prefix: Expected leading segment
        suffix: Expected trailing segment, or None

    Returns:
        The identifier ("a:b" above), or None if the key does not have
        the expected prefix/suffix or the identifier part is empty
    """
    head = f"{prefix}{delimiter}"
    tail = f"{delimiter}{suffix}" if suffix else ""

    if not key.startswith(head):
        return None
    if tail and not key.endswith(tail):
        return None
    if len(key) <= len(head) + len(tail):
        return None

    return key[len(head):len(key) - len(tail)] if tail else key[len(head):]


def rebuild_key(final_key: str, timestamp: Optional[float] = None,
                delimiter: str = DELIMITER) -> str:
    """Temporary key a rebuild writes into before swapping onto final_key"""
    ts = int((timestamp if timestamp is not None else time.time()) * 1000)
    return join(final_key, "rebuild", ts, delimiter=delimiter)
