from zope.interface import Attribute
from zope.interface import Interface


class IBackendClient(Interface):
    """Abstraction over a remote store keyed by path-like names."""

    ordered_listing = Attribute(
        "True if list() returns paths in ascending lexicographic order."
    )
    anonymous_writes = Attribute(
        "True if the backend can carry out writes on behalf of anonymous users."
    )
    metadata_rules = Attribute("MetadataRules describing storable metadata.")

    def put(path, reader, size, metadata):
        """Store ``size`` bytes read from ``reader``; return a PutReceipt."""

    def get(path, offset=0, length=-1):
        """Return a readable stream over the byte range (length -1: to end)."""

    def head(path):
        """Return a BackendEntry for path; raise NotFound if absent."""

    def delete(path):
        """Delete an object; raise NotFound if absent."""

    def list(prefix, cursor=None, limit=1000, start_after=""):
        """Return (entries, next_cursor) for paths starting with prefix.

        ``next_cursor`` is None once the listing is exhausted. Paths not
        greater than ``start_after`` may be skipped by the backend.
        """

    def mkdir(path):
        """Create a directory (no-op on flat backends)."""

    def rmdir(path):
        """Remove an empty directory (no-op on flat backends)."""

    def usage():
        """Return StorageInfo, or raise NotSupported."""


class IMultipartCoordinator(Interface):
    """Emulates multipart uploads on backends without a part primitive."""

    def initiate(bucket, key, metadata):
        """Open a session and return its upload ID."""

    def put_part(upload_id, part_number, reader, size, md5_hex=""):
        """Stage one part, replacing any earlier part with that number."""

    def list_parts(upload_id, part_number_marker=0, max_parts=1000):
        """Return ListPartsInfo for the staged parts."""

    def list_uploads(
        bucket, prefix, key_marker, upload_id_marker, delimiter, max_uploads
    ):
        """Return ListMultipartsInfo for in-flight sessions of a bucket."""

    def complete(upload_id, parts, store):
        """Verify claimed parts, then call ``store(reader, size)``."""

    def abort(upload_id):
        """Discard a session and its staged parts."""

    def abort_expired(max_age):
        """Abort sessions older than ``max_age`` seconds."""


class IGateway(Interface):
    """Backend-agnostic object layer consumed by an S3 protocol front end.

    Every method accepts an ``identity`` keyword; anonymous requests are
    checked against the bucket policy.
    """

    def make_bucket_with_location(bucket, location="", identity=None):
        """Create a bucket."""

    def get_bucket_info(bucket, identity=None):
        """Return BucketInfo."""

    def list_buckets(identity=None):
        """Return all buckets, sorted by name."""

    def delete_bucket(bucket, identity=None):
        """Delete an empty bucket."""

    def get_object(
        bucket, key, writer, offset=0, length=-1, cancel=None, identity=None
    ):
        """Copy an object's byte range into ``writer``."""

    def get_object_info(bucket, key, identity=None):
        """Return ObjectInfo."""

    def put_object(bucket, key, data, size, metadata=None, identity=None):
        """Store an object."""

    def copy_object(
        src_bucket, src_key, dst_bucket, dst_key, metadata=None, identity=None
    ):
        """Copy an object, optionally replacing its metadata."""

    def delete_object(bucket, key, identity=None):
        """Delete an object."""

    def list_objects(
        bucket, prefix="", marker="", delimiter="", max_keys=1000, identity=None
    ):
        """V1 listing."""

    def list_objects_v2(
        bucket,
        prefix="",
        continuation_token="",
        fetch_owner=False,
        delimiter="",
        max_keys=1000,
        start_after="",
        identity=None,
    ):
        """V2 listing."""

    def new_multipart_upload(bucket, key, metadata=None, identity=None):
        """Initiate a multipart upload."""

    def list_multipart_uploads(
        bucket,
        prefix="",
        key_marker="",
        upload_id_marker="",
        delimiter="",
        max_uploads=1000,
        identity=None,
    ):
        """List in-flight uploads."""

    def put_object_part(
        bucket, key, upload_id, part_number, data, size, md5_hex="", identity=None
    ):
        """Upload one part."""

    def copy_object_part(
        src_bucket,
        src_key,
        dst_bucket,
        dst_key,
        upload_id,
        part_number,
        offset=0,
        length=-1,
        identity=None,
    ):
        """Upload one part copied from an existing object."""

    def list_object_parts(
        bucket, key, upload_id, part_number_marker=0, max_parts=1000, identity=None
    ):
        """List staged parts."""

    def abort_multipart_upload(bucket, key, upload_id, identity=None):
        """Abort an upload."""

    def complete_multipart_upload(bucket, key, upload_id, parts, identity=None):
        """Assemble the claimed parts into one object."""

    def set_bucket_policies(bucket, policy, identity=None):
        """Replace a bucket's policy."""

    def get_bucket_policies(bucket, identity=None):
        """Return a bucket's policy."""

    def delete_bucket_policies(bucket, identity=None):
        """Remove a bucket's policy."""
