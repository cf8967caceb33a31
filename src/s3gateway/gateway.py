from datetime import datetime
from datetime import timezone
from s3gateway import policy as actions
from s3gateway.datatypes import BucketInfo
from s3gateway.datatypes import CompletePart
from s3gateway.datatypes import Identity
from s3gateway.datatypes import ListObjectsInfo
from s3gateway.datatypes import ListObjectsV2Info
from s3gateway.errors import AccessDenied
from s3gateway.errors import AlreadyExists
from s3gateway.errors import GatewayError
from s3gateway.errors import InternalError
from s3gateway.errors import InvalidArgument
from s3gateway.errors import NotFound
from s3gateway.errors import NotSupported
from s3gateway.errors import Timeout
from s3gateway.errors import normalize
from s3gateway.interfaces import IGateway
from s3gateway.metadata import CONTENT_LENGTH
from s3gateway.metadata import CONTENT_TYPE
from s3gateway.metadata import Metadata
from s3gateway.metadata import MetadataTranslator
from s3gateway.multipart import MultipartCoordinator
from s3gateway.pagination import Paginator
from s3gateway.pagination import decode_cursor
from s3gateway.policy import BucketPolicy
from zope.interface import implementer

import io
import json
import logging
import re


logger = logging.getLogger(__name__)

RESERVED_PREFIX = ".s3gateway/"
BUCKETS_PREFIX = RESERVED_PREFIX + "buckets/"
POLICIES_PREFIX = RESERVED_PREFIX + "policies/"
MAX_KEY_BYTES = 1024
CHUNK_SIZE = 1024 * 1024

_BUCKET_NAME_RE = re.compile(r"[a-z0-9]([a-z0-9.-]{0,61}[a-z0-9])?")
_IPV4_RE = re.compile(r"\d{1,3}(\.\d{1,3}){3}")

VERIFIED = Identity.VERIFIED


def check_bucket_name(bucket):
    if (
        not isinstance(bucket, str)
        or not _BUCKET_NAME_RE.fullmatch(bucket)
        or ".." in bucket
        or _IPV4_RE.fullmatch(bucket)
    ):
        raise InvalidArgument(f"invalid bucket name: {bucket!r}")


def check_key(key):
    if not isinstance(key, str) or not key:
        raise InvalidArgument("object key must be a non-empty string")
    if len(key.encode("utf-8")) > MAX_KEY_BYTES:
        raise InvalidArgument(f"object key longer than {MAX_KEY_BYTES} bytes")


def _object_path(bucket, key):
    return f"{bucket}/{key}"


def _record_path(bucket):
    return f"{BUCKETS_PREFIX}{bucket}.json"


def _policy_path(bucket):
    return f"{POLICIES_PREFIX}{bucket}.json"


def _as_claims(parts):
    return [p if isinstance(p, CompletePart) else CompletePart(*p) for p in parts]


@implementer(IGateway)
class Gateway:
    """S3 object layer on top of any IBackendClient.

    The gateway keeps no durable state of its own: bucket records and
    policies are small JSON objects below ``.s3gateway/`` on the backend,
    which no valid bucket name can shadow. Requests made with
    ``identity=Identity.ANONYMOUS`` must be allowed by the bucket policy.
    """

    def __init__(self, backend, coordinator=None, owner=""):
        self._backend = backend
        self._translator = MetadataTranslator(backend.metadata_rules)
        self._multipart = coordinator or MultipartCoordinator()
        self.owner = owner

    def __repr__(self):
        return f"<Gateway for {self._backend!r}>"

    @property
    def backend(self):
        return self._backend

    @property
    def multipart(self):
        return self._multipart

    # -- Helpers --

    def _call(self, operation, resource, func, *args, **kwargs):
        """Invoke a backend function, normalizing whatever it raises."""
        try:
            return func(*args, **kwargs)
        except GatewayError:
            raise
        except Exception as e:
            raise normalize(e, operation, resource) from e

    def _read_small(self, path, operation):
        stream = self._call(operation, path, self._backend.get, path)
        try:
            return self._call(operation, path, stream.read)
        finally:
            stream.close()

    def _write_small(self, path, payload, operation):
        data = payload.encode("utf-8")
        return self._call(
            operation,
            path,
            self._backend.put,
            path,
            io.BytesIO(data),
            len(data),
            {CONTENT_TYPE: "application/json"},
        )

    def _load_policy(self, bucket):
        try:
            raw = self._read_small(_policy_path(bucket), "get_policy")
        except NotFound:
            return None
        return BucketPolicy.from_json(raw.decode("utf-8"))

    def _authorize(self, identity, action, bucket=None, key=None):
        if identity is None or identity is Identity.VERIFIED:
            return
        resource = bucket if key is None else _object_path(bucket, key)
        if bucket is None:
            raise AccessDenied(f"anonymous {action} is never allowed", action)
        check_bucket_name(bucket)
        policy = self._load_policy(bucket)
        if policy is None or not policy.is_allowed(action, bucket, key):
            raise AccessDenied(f"anonymous {action} denied", action, resource)
        if action in actions.WRITE_ACTIONS and not self._backend.anonymous_writes:
            raise NotSupported(
                "backend does not support anonymous writes", action, resource
            )

    def _bucket_info(self, bucket, operation):
        check_bucket_name(bucket)
        try:
            raw = self._read_small(_record_path(bucket), operation)
        except NotFound as e:
            raise NotFound(f"no such bucket: {bucket}", operation, bucket) from e
        try:
            record = json.loads(raw.decode("utf-8"))
            created = datetime.fromisoformat(record["created"])
        except (ValueError, KeyError, TypeError) as e:
            raise InternalError(
                f"corrupt bucket record for {bucket}", operation, bucket
            ) from e
        return BucketInfo(bucket, created, record.get("location", ""))

    def _object_info(self, bucket, key, native, size, etag, last_modified, owner=None):
        return self._translator.from_backend(
            native, bucket, key, size, etag, last_modified, owner
        )

    def _native_metadata(self, metadata, size=None):
        metadata = Metadata(metadata or {})
        declared = metadata.pop(CONTENT_LENGTH, None)
        if declared is not None and size is not None and size >= 0:
            if declared.strip() != str(size):
                raise InvalidArgument(
                    f"content-length {declared} does not match size {size}"
                )
        return self._translator.to_backend(metadata).check()

    # -- Buckets --

    def make_bucket_with_location(self, bucket, location="", identity=VERIFIED):
        self._authorize(identity, "s3:CreateBucket")
        check_bucket_name(bucket)
        try:
            self._bucket_info(bucket, "make_bucket")
        except NotFound:
            pass
        else:
            raise AlreadyExists(
                f"bucket already exists: {bucket}", "make_bucket", bucket
            )
        self._call("make_bucket", bucket, self._backend.mkdir, bucket)
        created = datetime.now(timezone.utc)
        record = {"name": bucket, "created": created.isoformat(), "location": location}
        self._write_small(_record_path(bucket), json.dumps(record), "make_bucket")
        logger.info("Created bucket %s (location=%r)", bucket, location)
        return BucketInfo(bucket, created, location)

    def get_bucket_info(self, bucket, identity=VERIFIED):
        self._authorize(identity, actions.LIST_BUCKET, bucket)
        return self._bucket_info(bucket, "get_bucket_info")

    def list_buckets(self, identity=VERIFIED):
        self._authorize(identity, "s3:ListAllMyBuckets")
        paginator = Paginator(self._backend, BUCKETS_PREFIX)
        buckets = []
        for item in self._call("list_buckets", "", list, paginator.iter_entries()):
            name = item.key.removesuffix(".json")
            try:
                buckets.append(self._bucket_info(name, "list_buckets"))
            except (NotFound, InvalidArgument):
                # deleted concurrently, or not a bucket record
                continue
        return sorted(buckets, key=lambda b: b.name)

    def delete_bucket(self, bucket, identity=VERIFIED):
        self._authorize(identity, "s3:DeleteBucket")
        self._bucket_info(bucket, "delete_bucket")
        paginator = Paginator(self._backend, bucket + "/")
        entries = paginator.iter_entries()
        first = self._call("delete_bucket", bucket, next, entries, None)
        if first is not None:
            raise InvalidArgument(
                f"bucket not empty: {bucket}", "delete_bucket", bucket
            )
        self._call("delete_bucket", bucket, self._backend.rmdir, bucket)
        try:
            self._call(
                "delete_bucket", bucket, self._backend.delete, _policy_path(bucket)
            )
        except NotFound:
            pass
        self._call(
            "delete_bucket", bucket, self._backend.delete, _record_path(bucket)
        )
        logger.info("Deleted bucket %s", bucket)

    # -- Objects --

    def get_object_info(self, bucket, key, identity=VERIFIED):
        check_key(key)
        self._authorize(identity, actions.GET_OBJECT, bucket, key)
        self._bucket_info(bucket, "get_object_info")
        path = _object_path(bucket, key)
        entry = self._call("get_object_info", path, self._backend.head, path)
        return self._object_info(
            bucket, key, entry.metadata, entry.size, entry.etag, entry.last_modified
        )

    def get_object(
        self, bucket, key, writer, offset=0, length=-1, cancel=None, identity=VERIFIED
    ):
        """Copy a byte range of an object into ``writer``.

        ``cancel`` is an optional threading.Event, checked before each
        chunk of CHUNK_SIZE bytes; once set, the backend stream is closed
        and Timeout raised. A read already blocked inside the backend is
        bounded only by the backend's own read timeout. A failed read never
        reports success, even if some bytes were already written.
        """
        if offset < 0:
            raise InvalidArgument(f"invalid range offset {offset}", "get_object")
        info = self.get_object_info(bucket, key, identity=identity)
        path = _object_path(bucket, key)
        stream = self._call("get_object", path, self._backend.get, path, offset, length)
        try:
            while True:
                if cancel is not None and cancel.is_set():
                    raise Timeout("request cancelled", "get_object", path)
                chunk = stream.read(CHUNK_SIZE)
                if not chunk:
                    break
                writer.write(chunk)
        except GatewayError:
            raise
        except Exception as e:
            raise normalize(e, "get_object", path) from e
        finally:
            stream.close()
        return info

    def put_object(self, bucket, key, data, size, metadata=None, identity=VERIFIED):
        check_key(key)
        self._authorize(identity, actions.PUT_OBJECT, bucket, key)
        self._bucket_info(bucket, "put_object")
        native = self._native_metadata(metadata, size)
        path = _object_path(bucket, key)
        receipt = self._call(
            "put_object", path, self._backend.put, path, data, size, native
        )
        return self._object_info(
            bucket, key, native, receipt.size, receipt.etag, receipt.last_modified
        )

    def copy_object(
        self, src_bucket, src_key, dst_bucket, dst_key, metadata=None, identity=VERIFIED
    ):
        """Copy an object; ``metadata`` None keeps the source's metadata."""
        check_key(src_key)
        check_key(dst_key)
        self._authorize(identity, actions.GET_OBJECT, src_bucket, src_key)
        self._authorize(identity, actions.PUT_OBJECT, dst_bucket, dst_key)
        self._bucket_info(src_bucket, "copy_object")
        self._bucket_info(dst_bucket, "copy_object")
        src = _object_path(src_bucket, src_key)
        dst = _object_path(dst_bucket, dst_key)
        if src == dst and metadata is None:
            raise InvalidArgument(
                "copying an object onto itself requires new metadata",
                "copy_object",
                dst,
            )
        entry = self._call("copy_object", src, self._backend.head, src)
        if metadata is None:
            native = dict(entry.metadata)
        else:
            native = self._native_metadata(metadata)
        # read the source fully first when copying onto itself
        if src == dst:
            stream = io.BytesIO(self._read_small(src, "copy_object"))
        else:
            stream = self._call("copy_object", src, self._backend.get, src)
        try:
            receipt = self._call(
                "copy_object", dst, self._backend.put, dst, stream, entry.size, native
            )
        finally:
            stream.close()
        return self._object_info(
            dst_bucket,
            dst_key,
            native,
            receipt.size,
            receipt.etag,
            receipt.last_modified,
        )

    def delete_object(self, bucket, key, identity=VERIFIED):
        check_key(key)
        self._authorize(identity, actions.DELETE_OBJECT, bucket, key)
        self._bucket_info(bucket, "delete_object")
        path = _object_path(bucket, key)
        self._call("delete_object", path, self._backend.delete, path)

    def _list_page(self, bucket, prefix, delimiter, after, max_keys, operation):
        paginator = Paginator(self._backend, bucket + "/")
        return self._call(
            operation, bucket, paginator.list_page, prefix, delimiter, after, max_keys
        )

    def _listed_objects(self, bucket, page, owner=None):
        return [
            self._object_info(
                bucket,
                item.key,
                item.entry.metadata,
                item.entry.size,
                item.entry.etag,
                item.entry.last_modified,
                owner,
            )
            for item in page.objects
        ]

    def list_objects(
        self,
        bucket,
        prefix="",
        marker="",
        delimiter="",
        max_keys=1000,
        identity=VERIFIED,
    ):
        self._authorize(identity, actions.LIST_BUCKET, bucket)
        self._bucket_info(bucket, "list_objects")
        page = self._list_page(
            bucket, prefix, delimiter, marker, max_keys, "list_objects"
        )
        return ListObjectsInfo(
            objects=self._listed_objects(bucket, page),
            prefixes=page.prefixes,
            is_truncated=page.is_truncated,
            next_marker=page.last_key if page.is_truncated else "",
        )

    def list_objects_v2(
        self,
        bucket,
        prefix="",
        continuation_token="",
        fetch_owner=False,
        delimiter="",
        max_keys=1000,
        start_after="",
        identity=VERIFIED,
    ):
        self._authorize(identity, actions.LIST_BUCKET, bucket)
        self._bucket_info(bucket, "list_objects_v2")
        after = decode_cursor(continuation_token) if continuation_token else start_after
        page = self._list_page(
            bucket, prefix, delimiter, after, max_keys, "list_objects_v2"
        )
        owner = self.owner if fetch_owner else None
        objects = self._listed_objects(bucket, page, owner)
        return ListObjectsV2Info(
            objects=objects,
            prefixes=page.prefixes,
            is_truncated=page.is_truncated,
            continuation_token=continuation_token,
            next_continuation_token=page.next_cursor,
            key_count=len(objects) + len(page.prefixes),
        )

    # -- Multipart uploads --

    def new_multipart_upload(self, bucket, key, metadata=None, identity=VERIFIED):
        check_key(key)
        self._authorize(identity, actions.PUT_OBJECT, bucket, key)
        self._bucket_info(bucket, "new_multipart_upload")
        # fail now rather than at completion
        self._native_metadata(metadata)
        return self._call(
            "new_multipart_upload",
            _object_path(bucket, key),
            self._multipart.initiate,
            bucket,
            key,
            Metadata(metadata or {}),
        )

    def list_multipart_uploads(
        self,
        bucket,
        prefix="",
        key_marker="",
        upload_id_marker="",
        delimiter="",
        max_uploads=1000,
        identity=VERIFIED,
    ):
        self._authorize(identity, actions.LIST_BUCKET_MULTIPART_UPLOADS, bucket)
        self._bucket_info(bucket, "list_multipart_uploads")
        return self._multipart.list_uploads(
            bucket, prefix, key_marker, upload_id_marker, delimiter, max_uploads
        )

    def put_object_part(
        self,
        bucket,
        key,
        upload_id,
        part_number,
        data,
        size,
        md5_hex="",
        identity=VERIFIED,
    ):
        self._authorize(identity, actions.PUT_OBJECT, bucket, key)
        self._multipart.get_session(upload_id, bucket, key)
        return self._call(
            "put_object_part",
            upload_id,
            self._multipart.put_part,
            upload_id,
            part_number,
            data,
            size,
            md5_hex,
        )

    def copy_object_part(
        self,
        src_bucket,
        src_key,
        dst_bucket,
        dst_key,
        upload_id,
        part_number,
        offset=0,
        length=-1,
        identity=VERIFIED,
    ):
        check_key(src_key)
        self._authorize(identity, actions.GET_OBJECT, src_bucket, src_key)
        self._authorize(identity, actions.PUT_OBJECT, dst_bucket, dst_key)
        self._bucket_info(src_bucket, "copy_object_part")
        self._multipart.get_session(upload_id, dst_bucket, dst_key)
        src = _object_path(src_bucket, src_key)
        entry = self._call("copy_object_part", src, self._backend.head, src)
        part_size = entry.size - offset if length < 0 else length
        if offset < 0 or part_size < 0 or offset + part_size > entry.size:
            raise InvalidArgument(
                f"range {offset}+{length} outside object of {entry.size} bytes",
                "copy_object_part",
                src,
            )
        if part_size == 0:
            stream = io.BytesIO(b"")
        else:
            stream = self._call(
                "copy_object_part", src, self._backend.get, src, offset, part_size
            )
        try:
            return self._call(
                "copy_object_part",
                upload_id,
                self._multipart.put_part,
                upload_id,
                part_number,
                stream,
                part_size,
            )
        finally:
            stream.close()

    def list_object_parts(
        self,
        bucket,
        key,
        upload_id,
        part_number_marker=0,
        max_parts=1000,
        identity=VERIFIED,
    ):
        self._authorize(identity, actions.LIST_MULTIPART_UPLOAD_PARTS, bucket, key)
        self._multipart.get_session(upload_id, bucket, key)
        return self._multipart.list_parts(upload_id, part_number_marker, max_parts)

    def abort_multipart_upload(self, bucket, key, upload_id, identity=VERIFIED):
        self._authorize(identity, actions.ABORT_MULTIPART_UPLOAD, bucket, key)
        self._multipart.get_session(upload_id, bucket, key)
        self._multipart.abort(upload_id)

    def complete_multipart_upload(
        self, bucket, key, upload_id, parts, identity=VERIFIED
    ):
        """Assemble the claimed (part number, ETag) pairs into one object."""
        self._authorize(identity, actions.PUT_OBJECT, bucket, key)
        self._bucket_info(bucket, "complete_multipart_upload")
        session = self._multipart.get_session(upload_id, bucket, key)
        native = self._native_metadata(session.metadata)
        path = _object_path(bucket, key)

        def store(reader, size):
            return self._call(
                "complete_multipart_upload",
                path,
                self._backend.put,
                path,
                reader,
                size,
                native,
            )

        receipt = self._multipart.complete(upload_id, _as_claims(parts), store)
        return self._object_info(
            bucket, key, native, receipt.size, receipt.etag, receipt.last_modified
        )

    # -- Bucket policies --

    def set_bucket_policies(self, bucket, policy, identity=VERIFIED):
        """Store ``policy`` (a BucketPolicy or its JSON text), replacing any other."""
        self._authorize(identity, "s3:PutBucketPolicy")
        self._bucket_info(bucket, "set_bucket_policies")
        if not isinstance(policy, BucketPolicy):
            policy = BucketPolicy.from_json(policy)
        policy.validate_for(bucket)
        self._write_small(
            _policy_path(bucket), policy.to_json(), "set_bucket_policies"
        )

    def get_bucket_policies(self, bucket, identity=VERIFIED):
        self._authorize(identity, "s3:GetBucketPolicy")
        self._bucket_info(bucket, "get_bucket_policies")
        policy = self._load_policy(bucket)
        if policy is None:
            raise NotFound(
                f"no policy for bucket {bucket}", "get_bucket_policies", bucket
            )
        return policy

    def delete_bucket_policies(self, bucket, identity=VERIFIED):
        self._authorize(identity, "s3:DeleteBucketPolicy")
        self._bucket_info(bucket, "delete_bucket_policies")
        path = _policy_path(bucket)
        try:
            self._call("delete_bucket_policies", bucket, self._backend.delete, path)
        except NotFound as e:
            raise NotFound(
                f"no policy for bucket {bucket}", "delete_bucket_policies", bucket
            ) from e

    # -- Lifecycle --

    def storage_info(self):
        return self._call("storage_info", "", self._backend.usage)

    def shutdown(self):
        self._multipart.close()
        logger.info("Gateway for %r shut down", self._backend)
