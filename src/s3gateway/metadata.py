"""Translation between gateway object metadata and backend-native metadata.

The gateway side is a case-insensitive header mapping plus the content type
and size as distinguished fields. The backend side is a flat ``str -> str``
dict holding ``content-type`` and the user keys a backend accepts, as
described by its :class:`MetadataRules`.
"""

from __future__ import annotations

from collections.abc import MutableMapping
from dataclasses import dataclass
from dataclasses import field
from s3gateway.datatypes import ObjectInfo
from s3gateway.errors import InvalidArgument

import logging
import re


logger = logging.getLogger(__name__)

CONTENT_TYPE = "content-type"
CONTENT_LENGTH = "content-length"
DEFAULT_CONTENT_TYPE = "application/octet-stream"

# Owned by the gateway, never stored as user metadata
RESERVED_KEYS = frozenset({CONTENT_LENGTH, "etag", "last-modified"})

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


class Metadata(MutableMapping):
    """Header-style mapping with case-insensitive keys.

    Keys are stored lower-cased, which is also how they are reported back.
    """

    def __init__(self, data=None, **kwargs):
        self._data = {}
        if data is not None:
            self.update(data)
        if kwargs:
            self.update(kwargs)

    def __getitem__(self, key):
        return self._data[key.lower()]

    def __setitem__(self, key, value):
        if not isinstance(key, str) or not isinstance(value, str):
            raise InvalidArgument(f"metadata must map str to str, got {key!r}")
        self._data[key.lower()] = value

    def __delitem__(self, key):
        del self._data[key.lower()]

    def __iter__(self):
        return iter(self._data)

    def __len__(self):
        return len(self._data)

    def __eq__(self, other):
        if isinstance(other, MutableMapping):
            return self._data == {k.lower(): v for k, v in other.items()}
        return NotImplemented

    def __repr__(self):
        return f"Metadata({self._data!r})"

    def copy(self):
        return Metadata(self._data)


@dataclass(frozen=True, slots=True)
class MetadataRules:
    """What a backend can store natively.

    ``key_pattern`` must match a whole (lower-cased) key; ``max_bytes``
    bounds the summed UTF-8 length of keys and values.
    """

    key_pattern: str = r"[a-z0-9][a-z0-9._-]*"
    ascii_values: bool = False
    max_bytes: int | None = None


@dataclass(slots=True)
class Translation:
    native: dict[str, str]
    rejected: dict[str, str] = field(default_factory=dict)

    def check(self):
        """Raise InvalidArgument naming every key that could not be mapped."""
        if self.rejected:
            detail = ", ".join(
                f"{key} ({reason})" for key, reason in sorted(self.rejected.items())
            )
            raise InvalidArgument(f"unsupported metadata: {detail}")
        return self.native


class MetadataTranslator:
    """Bidirectional metadata mapping for one backend's rules."""

    def __init__(self, rules=None):
        self.rules = rules or MetadataRules()
        self._key_re = re.compile(self.rules.key_pattern)

    def split(self, metadata, content_type=None):
        """Separate the content type from user metadata.

        Returns ``(content_type, Metadata)``; an explicit ``content_type``
        wins over a ``content-type`` entry in ``metadata``.
        """
        user = Metadata(metadata or {})
        header_type = user.pop(CONTENT_TYPE, None)
        return content_type or header_type or DEFAULT_CONTENT_TYPE, user

    def _reject_reason(self, key, value):
        if key in RESERVED_KEYS or key == CONTENT_TYPE:
            return "reserved"
        if not self._key_re.fullmatch(key):
            return "key not representable"
        if _CONTROL_CHARS.search(value):
            return "control characters in value"
        if self.rules.ascii_values and not value.isascii():
            return "non-ASCII value"
        return None

    def to_backend(self, metadata, content_type=None):
        content_type, user = self.split(metadata, content_type)
        native = {CONTENT_TYPE: content_type}
        rejected = {}
        used = 0
        for key in sorted(user):
            value = user[key]
            reason = self._reject_reason(key, value)
            if reason is None and self.rules.max_bytes is not None:
                cost = len(key.encode("utf-8")) + len(value.encode("utf-8"))
                if used + cost > self.rules.max_bytes:
                    reason = "exceeds metadata size limit"
                else:
                    used += cost
            if reason is not None:
                rejected[key] = reason
            else:
                native[key] = value
        if rejected:
            logger.debug("Rejected metadata keys: %s", rejected)
        return Translation(native, rejected)

    def from_backend(
        self, native, bucket, key, size, etag, last_modified=None, owner=None
    ):
        native = Metadata(native or {})
        content_type = native.pop(CONTENT_TYPE, None) or DEFAULT_CONTENT_TYPE
        for reserved in RESERVED_KEYS:
            native.pop(reserved, None)
        return ObjectInfo(
            bucket=bucket,
            key=key,
            size=size,
            etag=etag.strip('"') if etag else "",
            content_type=content_type,
            last_modified=last_modified,
            metadata=dict(native),
            owner=owner,
        )
