"""Value types passed between the gateway, its components and backends."""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field
from datetime import datetime

import enum


class Identity(enum.Enum):
    """Who is making a request, as verified by the front end."""

    VERIFIED = "verified"
    ANONYMOUS = "anonymous"


@dataclass(frozen=True, slots=True)
class BucketInfo:
    name: str
    created: datetime
    location: str = ""


@dataclass(frozen=True, slots=True)
class ObjectInfo:
    bucket: str
    key: str
    size: int
    etag: str
    content_type: str
    last_modified: datetime | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    owner: str | None = None


@dataclass(frozen=True, slots=True)
class ListObjectsInfo:
    """Result of a V1 (marker based) listing."""

    objects: list[ObjectInfo]
    prefixes: list[str]
    is_truncated: bool = False
    next_marker: str = ""


@dataclass(frozen=True, slots=True)
class ListObjectsV2Info:
    """Result of a V2 (continuation token based) listing."""

    objects: list[ObjectInfo]
    prefixes: list[str]
    is_truncated: bool = False
    continuation_token: str = ""
    next_continuation_token: str = ""
    key_count: int = 0


@dataclass(frozen=True, slots=True)
class PartInfo:
    part_number: int
    etag: str
    size: int
    last_modified: datetime


@dataclass(frozen=True, slots=True)
class ListPartsInfo:
    bucket: str
    key: str
    upload_id: str
    parts: list[PartInfo]
    part_number_marker: int = 0
    next_part_number_marker: int = 0
    max_parts: int = 0
    is_truncated: bool = False


@dataclass(frozen=True, slots=True)
class MultipartInfo:
    bucket: str
    key: str
    upload_id: str
    initiated: datetime


@dataclass(frozen=True, slots=True)
class ListMultipartsInfo:
    uploads: list[MultipartInfo]
    prefixes: list[str]
    key_marker: str = ""
    upload_id_marker: str = ""
    next_key_marker: str = ""
    next_upload_id_marker: str = ""
    max_uploads: int = 0
    is_truncated: bool = False


@dataclass(frozen=True, slots=True)
class CompletePart:
    """A (part number, checksum) claim supplied when completing an upload."""

    part_number: int
    etag: str


@dataclass(frozen=True, slots=True)
class BackendEntry:
    """One object as a backend reports it, with its native metadata."""

    path: str
    size: int
    etag: str = ""
    last_modified: datetime | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class PutReceipt:
    etag: str
    size: int
    last_modified: datetime | None = None


@dataclass(frozen=True, slots=True)
class StorageInfo:
    backend: str
    total_bytes: int | None = None
    free_bytes: int | None = None
