"""Marker and continuation-token listing over plain backend enumeration.

Keys are always emitted in ascending code-point order, which for str is the
same as ascending UTF-8 byte order. Resume points are keys, never backend
pagination tokens, so a listing survives a backend changing its token format
and intervening writes only show up if they sort after the resume point.
"""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field
from s3gateway.datatypes import BackendEntry
from s3gateway.errors import InvalidArgument

import base64
import json
import logging


logger = logging.getLogger(__name__)

CURSOR_VERSION = 1
MAX_LIMIT = 1000


@dataclass(frozen=True, slots=True)
class ListEntry:
    """An object key, or a common prefix when ``entry`` is None."""

    key: str
    entry: BackendEntry | None = None

    @property
    def is_prefix(self):
        return self.entry is None


@dataclass(slots=True)
class ListPage:
    objects: list[ListEntry] = field(default_factory=list)
    prefixes: list[str] = field(default_factory=list)
    is_truncated: bool = False
    last_key: str = ""

    @property
    def next_cursor(self):
        return encode_cursor(self.last_key) if self.is_truncated else ""


def encode_cursor(key):
    """Wrap a resume key into an opaque continuation token."""
    doc = json.dumps({"v": CURSOR_VERSION, "k": key}, separators=(",", ":"))
    return base64.urlsafe_b64encode(doc.encode("utf-8")).decode("ascii").rstrip("=")


def decode_cursor(token):
    if not token:
        return ""
    try:
        raw = base64.urlsafe_b64decode(token.encode("ascii") + b"=" * (-len(token) % 4))
        doc = json.loads(raw.decode("utf-8"))
    except ValueError as e:
        raise InvalidArgument("malformed continuation token") from e
    if (
        not isinstance(doc, dict)
        or doc.get("v") != CURSOR_VERSION
        or not isinstance(doc.get("k"), str)
    ):
        raise InvalidArgument("malformed continuation token")
    return doc["k"]


def common_prefix(key, prefix, delimiter):
    """Return the common prefix ``key`` rolls up into, or None."""
    if not delimiter:
        return None
    idx = key.find(delimiter, len(prefix))
    if idx < 0:
        return None
    return key[: idx + len(delimiter)]


class Paginator:
    """Lists the keys below ``root`` on a backend.

    ``root`` (typically ``"<bucket>/"``) is stripped from reported keys.
    """

    def __init__(self, backend, root="", page_size=MAX_LIMIT):
        self._backend = backend
        self._root = root
        self.page_size = page_size

    def _backend_entries(self, prefix, after):
        full_prefix = self._root + prefix
        start_after = self._root + after if after else ""
        cursor = None
        while True:
            entries, cursor = self._backend.list(
                full_prefix, cursor, self.page_size, start_after=start_after
            )
            yield from entries
            if not cursor:
                break

    def _keys(self, prefix, after):
        source = self._backend_entries(prefix, after)
        if not self._backend.ordered_listing:
            source = sorted(source, key=lambda e: e.path)
        root_len = len(self._root)
        for entry in source:
            if entry.path.startswith(self._root):
                yield entry.path[root_len:], entry

    def iter_entries(self, prefix="", delimiter="", after=""):
        """Lazily yield ListEntry items strictly after ``after``.

        With a delimiter, keys sharing a prefix up to the first delimiter
        past ``prefix`` collapse into one common-prefix entry.
        """
        last_rollup = None
        for key, entry in self._keys(prefix, after):
            if not key.startswith(prefix) or key <= after:
                continue
            rollup = common_prefix(key, prefix, delimiter)
            if rollup is None:
                yield ListEntry(key, entry)
                continue
            if rollup == after or rollup == last_rollup:
                continue
            last_rollup = rollup
            yield ListEntry(rollup)

    def list_page(self, prefix="", delimiter="", after="", limit=MAX_LIMIT):
        limit = max(0, min(limit, MAX_LIMIT))
        page = ListPage()
        if limit == 0:
            return page
        count = 0
        for item in self.iter_entries(prefix, delimiter, after):
            if count == limit:
                page.is_truncated = True
                break
            if item.is_prefix:
                page.prefixes.append(item.key)
            else:
                page.objects.append(item)
            page.last_key = item.key
            count += 1
        return page

    def list_cursor(self, prefix="", delimiter="", cursor="", limit=MAX_LIMIT):
        """Like list_page() but resuming from an opaque continuation token."""
        return self.list_page(prefix, delimiter, decode_cursor(cursor), limit)
