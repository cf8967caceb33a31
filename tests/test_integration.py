"""End-to-end tests of the gateway over an S3 backend, using moto."""

from moto import mock_aws
from s3gateway.datatypes import Identity
from s3gateway.errors import AccessDenied
from s3gateway.errors import InvalidArgument
from s3gateway.errors import NotFound
from s3gateway.errors import NotSupported
from s3gateway.gateway import Gateway
from s3gateway.multipart import MultipartCoordinator
from s3gateway.policy import BucketPolicy
from s3gateway.s3client import S3Backend

import boto3
import hashlib
import io
import pytest


@pytest.fixture
def s3_env():
    with mock_aws():
        boto3.client("s3", region_name="us-east-1").create_bucket(Bucket="test-bucket")
        yield


@pytest.fixture
def backend(s3_env):
    return S3Backend(bucket_name="test-bucket", prefix="gw", region_name="us-east-1")


@pytest.fixture
def gateway(backend, tmp_path):
    gw = Gateway(backend, MultipartCoordinator(staging_dir=str(tmp_path / "staging")))
    gw.make_bucket_with_location("photos")
    yield gw
    gw.shutdown()


def _put(gateway, key, data, metadata=None, **kw):
    return gateway.put_object(
        "photos", key, io.BytesIO(data), len(data), metadata, **kw
    )


def _get(gateway, key, **kw):
    out = io.BytesIO()
    gateway.get_object("photos", key, out, **kw)
    return out.getvalue()


def _raw_keys():
    s3 = boto3.client("s3", region_name="us-east-1")
    resp = s3.list_objects_v2(Bucket="test-bucket")
    return sorted(obj["Key"] for obj in resp.get("Contents", []))


class TestLayout:
    def test_bucket_record_and_objects(self, gateway):
        _put(gateway, "a/b", b"x")
        assert _raw_keys() == ["gw/.s3gateway/buckets/photos.json", "gw/photos/a/b"]

    def test_policy_record(self, gateway):
        gateway.set_bucket_policies("photos", BucketPolicy.canned("photos"))
        assert "gw/.s3gateway/policies/photos.json" in _raw_keys()


class TestObjectRoundtrip:
    def test_hello(self, gateway):
        metadata = {"Content-Type": "text/plain", "X-Custom": "v"}
        _put(gateway, "hello", b"hello", metadata)
        assert _get(gateway, "hello") == b"hello"
        info = gateway.get_object_info("photos", "hello")
        assert info.size == 5
        assert info.etag == hashlib.md5(b"hello").hexdigest()
        assert info.content_type == "text/plain"
        assert info.metadata == {"x-custom": "v"}

    def test_failed_overwrite_keeps_object(self, gateway):
        _put(gateway, "k", b"hello")
        with pytest.raises(InvalidArgument):
            gateway.put_object("photos", "k", io.BytesIO(b"abc"), 10)
        assert _get(gateway, "k") == b"hello"

    def test_range(self, gateway):
        _put(gateway, "k", b"0123456789")
        assert _get(gateway, "k", offset=4, length=2) == b"45"

    def test_non_ascii_metadata_rejected(self, gateway):
        with pytest.raises(InvalidArgument):
            _put(gateway, "k", b"x", {"x-name": "café"})

    def test_copy(self, gateway):
        _put(gateway, "src", b"data", {"x-a": "1"})
        gateway.copy_object("photos", "src", "photos", "dst")
        assert _get(gateway, "dst") == b"data"
        assert gateway.get_object_info("photos", "dst").metadata == {"x-a": "1"}

    def test_delete(self, gateway):
        _put(gateway, "k", b"x")
        gateway.delete_object("photos", "k")
        with pytest.raises(NotFound):
            gateway.get_object_info("photos", "k")


class TestListing:
    def test_delimiter_pages(self, gateway):
        for key in ("a", "b/1", "b/2", "c/1", "d"):
            _put(gateway, key, b"x")
        seen = []
        token = ""
        while True:
            result = gateway.list_objects_v2(
                "photos", continuation_token=token, delimiter="/", max_keys=2
            )
            seen.extend(o.key for o in result.objects)
            seen.extend(result.prefixes)
            if not result.is_truncated:
                break
            token = result.next_continuation_token
        assert sorted(seen) == ["a", "b/", "c/", "d"]
        assert len(seen) == 4


class TestMultipartUpload:
    def test_two_parts(self, gateway):
        upload_id = gateway.new_multipart_upload("photos", "big")
        parts = [
            gateway.put_object_part(
                "photos", "big", upload_id, n, io.BytesIO(data), len(data)
            )
            for n, data in ((1, b"AA"), (2, b"BB"))
        ]
        info = gateway.complete_multipart_upload(
            "photos", "big", upload_id, [(p.part_number, p.etag) for p in parts]
        )
        assert info.size == 4
        assert _get(gateway, "big") == b"AABB"


class TestBuckets:
    def test_list_and_delete(self, gateway):
        gateway.make_bucket_with_location("videos")
        assert [b.name for b in gateway.list_buckets()] == ["photos", "videos"]
        gateway.delete_bucket("videos")
        assert [b.name for b in gateway.list_buckets()] == ["photos"]

    def test_delete_not_empty(self, gateway):
        _put(gateway, "k", b"x")
        with pytest.raises(InvalidArgument):
            gateway.delete_bucket("photos")


class TestAnonymousAccess:
    def test_read_allowed_by_policy(self, gateway):
        _put(gateway, "k", b"x")
        gateway.set_bucket_policies("photos", BucketPolicy.canned("photos"))
        assert _get(gateway, "k", identity=Identity.ANONYMOUS) == b"x"

    def test_write_without_backend_support(self, gateway):
        gateway.set_bucket_policies(
            "photos", BucketPolicy.canned("photos", access="readwrite")
        )
        with pytest.raises(NotSupported):
            _put(gateway, "k", b"x", identity=Identity.ANONYMOUS)
        assert "gw/photos/k" not in _raw_keys()

    def test_write_denied(self, gateway):
        with pytest.raises(AccessDenied):
            _put(gateway, "k", b"x", identity=Identity.ANONYMOUS)
