"""
Safety checks for derived object keys.

Templated keys may embed record keys, which come from producers we do not
control. Keys are validated, never rewritten: rewriting would break the
guarantee that re-deriving a batch's key yields the same object.
"""

import unicodedata

from .exceptions import InvalidObjectKeyError

MAX_KEY_BYTES = 1024  # S3 limit, measured in UTF-8
_INVALID_CONTROL_CHARS: set[int] = set(range(0x00, 0x20)) | {0x7F}  # includes DEL


def validate_object_key(key: str) -> str:
    """
    Returns *key* unchanged if it is safe to upload under.

    Rejects:
    - empty keys and keys over 1024 UTF-8 bytes
    - control characters and invisible Unicode format characters (category Cf)
    - ``..`` or ``.`` path segments and a leading ``/``

    Raises:
        InvalidObjectKeyError: describing the first problem found.

    Examples:
        >>> validate_object_key("topic-0-00000000000000000042.gz")
        'topic-0-00000000000000000042.gz'

        >>> validate_object_key("prefix/../etc/passwd")
        InvalidObjectKeyError: Object key contains path traversal segments
    """
    if not isinstance(key, str) or not key:
        raise InvalidObjectKeyError(
            "Object key must be a non-empty string",
            context={"key": key, "type": type(key).__name__},
        )

    key_length = len(key.encode("utf-8"))
    if key_length > MAX_KEY_BYTES:
        raise InvalidObjectKeyError(
            "Object key exceeds byte length limit",
            context={"key": key, "key_length": key_length},
        )

    for char in key:
        if ord(char) in _INVALID_CONTROL_CHARS:
            raise InvalidObjectKeyError(
                "Object key contains control characters",
                context={"key": key, "char_code": hex(ord(char))},
            )
        if unicodedata.category(char) == "Cf":
            raise InvalidObjectKeyError(
                "Object key contains invisible Unicode characters",
                context={"key": key, "char_code": hex(ord(char))},
            )

    if key.startswith("/"):
        raise InvalidObjectKeyError(
            "Object key must be relative", context={"key": key}
        )

    # ".." inside a filename ("backup..old") is fine, only whole segments count
    if any(part in {".", ".."} for part in key.split("/")):
        raise InvalidObjectKeyError(
            "Object key contains path traversal segments", context={"key": key}
        )

    return key
