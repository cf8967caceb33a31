from botocore.config import Config
from botocore.exceptions import BotoCoreError
from botocore.exceptions import ClientError
from s3gateway.datatypes import BackendEntry
from s3gateway.datatypes import PutReceipt
from s3gateway.errors import InvalidArgument
from s3gateway.errors import NotFound
from s3gateway.errors import NotSupported
from s3gateway.errors import normalize
from s3gateway.interfaces import IBackendClient
from s3gateway.metadata import CONTENT_TYPE
from s3gateway.metadata import MetadataRules
from zope.interface import implementer

import base64
import boto3
import io
import logging
import re


logger = logging.getLogger(__name__)

# S3 user metadata travels as x-amz-meta-* headers, capped at 2 KB
S3_METADATA_RULES = MetadataRules(
    key_pattern=r"[a-z0-9][a-z0-9._-]*", ascii_values=True, max_bytes=2048
)


class CountingReader:
    """Counts the bytes handed to boto3's transfer manager.

    Raises InvalidArgument when the source ends before ``size`` bytes,
    so the transfer fails before anything is committed.
    """

    def __init__(self, reader, size, path=None):
        self._reader = reader
        self._size = size
        self._remaining = size
        self._path = path
        self.count = 0

    def read(self, size=-1):
        if self._remaining >= 0:
            if self._remaining == 0:
                return b""
            if size < 0 or size > self._remaining:
                size = self._remaining
        data = self._reader.read(size)
        if not data and size != 0 and self._remaining > 0:
            raise InvalidArgument(
                f"expected {self._size} bytes, got {self.count}", "put", self._path
            )
        self.count += len(data)
        if self._remaining >= 0:
            self._remaining -= len(data)
        return data


@implementer(IBackendClient)
class S3Backend:
    """Flat blob store in one S3-compatible bucket, via boto3.

    Gateway paths map to keys below an optional ``prefix``.
    """

    ordered_listing = True
    metadata_rules = S3_METADATA_RULES

    def __init__(
        self,
        bucket_name,
        prefix="",
        endpoint_url=None,
        region_name=None,
        aws_access_key_id=None,
        aws_secret_access_key=None,
        use_ssl=True,
        addressing_style="auto",
        connect_timeout=60,
        read_timeout=60,
        sse_customer_key=None,
        anonymous_writes=False,
    ):
        self.bucket_name = bucket_name
        self.anonymous_writes = anonymous_writes
        self._prefix = prefix.rstrip("/") if prefix else ""

        if self._prefix:
            if not re.fullmatch(r"[a-zA-Z0-9._/-]*", self._prefix):
                raise ValueError(
                    f"s3-prefix contains invalid characters: {self._prefix!r}. "
                    "Only alphanumeric characters, dots, hyphens, underscores, "
                    "and slashes are allowed."
                )
            if ".." in self._prefix:
                raise ValueError(f"s3-prefix must not contain '..': {self._prefix!r}")

        # SSE-C setup
        if sse_customer_key:
            if not use_ssl:
                raise ValueError("SSE-C requires SSL, set s3-use-ssl to true")
            raw_key = base64.b64decode(sse_customer_key)
            if len(raw_key) != 32:
                raise ValueError(
                    f"SSE-C key must be 32 bytes (256-bit), got {len(raw_key)}"
                )
            self._sse_extra_args = {
                "SSECustomerAlgorithm": "AES256",
                "SSECustomerKey": raw_key,
            }
        else:
            self._sse_extra_args = {}

        config = Config(
            s3={"addressing_style": addressing_style},
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
        )

        kwargs = {"config": config}
        if endpoint_url:
            kwargs["endpoint_url"] = endpoint_url
        if region_name:
            kwargs["region_name"] = region_name
        if aws_access_key_id:
            kwargs["aws_access_key_id"] = aws_access_key_id
        if aws_secret_access_key:
            kwargs["aws_secret_access_key"] = aws_secret_access_key
        kwargs["use_ssl"] = use_ssl
        if not use_ssl:
            logger.warning(
                "S3 SSL is disabled; data and credentials travel in cleartext"
            )

        self._client = boto3.client("s3", **kwargs)

    def __repr__(self):
        return f"<S3Backend {self.bucket_name!r} prefix={self._prefix!r}>"

    def _full_key(self, path):
        if self._prefix:
            return f"{self._prefix}/{path}"
        return path

    def _logical_key(self, key):
        if self._prefix:
            return key[len(self._prefix) + 1 :]
        return key

    def _wrap(self, e, operation, path):
        """Normalize a boto error; the original is logged at DEBUG."""
        raise normalize(e, operation, path) from e

    def put(self, path, reader, size, metadata):
        metadata = dict(metadata)
        extra_args = dict(self._sse_extra_args)
        content_type = metadata.pop(CONTENT_TYPE, None)
        if content_type:
            extra_args["ContentType"] = content_type
        if metadata:
            extra_args["Metadata"] = metadata
        try:
            self._client.upload_fileobj(
                CountingReader(reader, size, path),
                self.bucket_name,
                self._full_key(path),
                ExtraArgs=extra_args or None,
            )
        except (ClientError, BotoCoreError) as e:
            self._wrap(e, "put", path)
        entry = self.head(path)
        return PutReceipt(
            etag=entry.etag, size=entry.size, last_modified=entry.last_modified
        )

    def get(self, path, offset=0, length=-1):
        kwargs = dict(self._sse_extra_args)
        if length == 0:
            self.head(path)
            return io.BytesIO(b"")
        if offset > 0 or length > 0:
            end = "" if length < 0 else str(offset + length - 1)
            kwargs["Range"] = f"bytes={offset}-{end}"
        try:
            resp = self._client.get_object(
                Bucket=self.bucket_name, Key=self._full_key(path), **kwargs
            )
        except (ClientError, BotoCoreError) as e:
            self._wrap(e, "get", path)
        return resp["Body"]

    def head(self, path):
        try:
            resp = self._client.head_object(
                Bucket=self.bucket_name,
                Key=self._full_key(path),
                **self._sse_extra_args,
            )
        except ClientError as e:
            if e.response["Error"]["Code"] in ("404", "NoSuchKey"):
                raise NotFound(f"no such object: {path}", "head", path) from e
            self._wrap(e, "head", path)
        except BotoCoreError as e:
            self._wrap(e, "head", path)
        metadata = dict(resp.get("Metadata", {}))
        if resp.get("ContentType"):
            metadata[CONTENT_TYPE] = resp["ContentType"]
        return BackendEntry(
            path=path,
            size=resp["ContentLength"],
            etag=resp.get("ETag", "").strip('"'),
            last_modified=resp.get("LastModified"),
            metadata=metadata,
        )

    def delete(self, path):
        # S3 deletes are silent for missing keys
        self.head(path)
        try:
            self._client.delete_object(
                Bucket=self.bucket_name, Key=self._full_key(path)
            )
        except (ClientError, BotoCoreError) as e:
            self._wrap(e, "delete", path)

    def list(self, prefix, cursor=None, limit=1000, start_after=""):
        full_prefix = self._full_key(prefix) if self._prefix else prefix
        kwargs = {
            "Bucket": self.bucket_name,
            "Prefix": full_prefix,
            "MaxKeys": limit,
        }
        if cursor:
            kwargs["ContinuationToken"] = cursor
        elif start_after:
            kwargs["StartAfter"] = self._full_key(start_after)
        try:
            resp = self._client.list_objects_v2(**kwargs)
        except (ClientError, BotoCoreError) as e:
            self._wrap(e, "list", prefix)
        entries = [
            BackendEntry(
                path=self._logical_key(obj["Key"]),
                size=obj["Size"],
                etag=obj.get("ETag", "").strip('"'),
                last_modified=obj.get("LastModified"),
            )
            for obj in resp.get("Contents", [])
        ]
        next_cursor = None
        if resp.get("IsTruncated"):
            next_cursor = resp.get("NextContinuationToken")
        return entries, next_cursor

    def mkdir(self, path):
        """Flat namespace, nothing to create."""

    def rmdir(self, path):
        """Flat namespace, nothing to remove."""

    def usage(self):
        raise NotSupported(
            "S3 backends do not report capacity", "usage", self.bucket_name
        )
