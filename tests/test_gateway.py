"""Gateway behaviour over the filesystem backend."""

from s3gateway.datatypes import CompletePart
from s3gateway.datatypes import Identity
from s3gateway.errors import AccessDenied
from s3gateway.errors import AlreadyExists
from s3gateway.errors import InvalidArgument
from s3gateway.errors import NotFound
from s3gateway.errors import NotSupported
from s3gateway.errors import Timeout
from s3gateway.fsbackend import FilesystemBackend
from s3gateway.gateway import CHUNK_SIZE
from s3gateway.gateway import Gateway
from s3gateway.interfaces import IGateway
from s3gateway.multipart import MultipartCoordinator
from s3gateway.multipart import SessionState
from s3gateway.policy import BucketPolicy

import hashlib
import io
import pytest
import threading


ANONYMOUS = Identity.ANONYMOUS


def _md5(data):
    return hashlib.md5(data).hexdigest()


def _make_gateway(tmp_path, anonymous_writes=True, owner=""):
    backend = FilesystemBackend(
        str(tmp_path / "store"), anonymous_writes=anonymous_writes
    )
    coordinator = MultipartCoordinator(staging_dir=str(tmp_path / "staging"))
    return Gateway(backend, coordinator, owner=owner)


@pytest.fixture
def gateway(tmp_path):
    gw = _make_gateway(tmp_path)
    gw.make_bucket_with_location("photos")
    yield gw
    gw.shutdown()


def _put(gateway, key, data, metadata=None, bucket="photos", **kw):
    return gateway.put_object(bucket, key, io.BytesIO(data), len(data), metadata, **kw)


def _get(gateway, key, bucket="photos", **kw):
    out = io.BytesIO()
    gateway.get_object(bucket, key, out, **kw)
    return out.getvalue()


class CancellingWriter:
    """Sets ``cancel`` as soon as the first chunk arrives."""

    def __init__(self, cancel):
        self.cancel = cancel
        self.chunks = []

    def write(self, data):
        self.chunks.append(data)
        self.cancel.set()


class TestInterface:
    def test_interface_provided(self, gateway):
        assert IGateway.providedBy(gateway)


class TestBuckets:
    def test_make_and_info(self, gateway):
        info = gateway.make_bucket_with_location("videos", "us-west-2")
        assert info.name == "videos"
        assert info.location == "us-west-2"
        fetched = gateway.get_bucket_info("videos")
        assert fetched == info

    def test_already_exists(self, gateway):
        with pytest.raises(AlreadyExists):
            gateway.make_bucket_with_location("photos")

    @pytest.mark.parametrize(
        "name",
        ["", "a" * 64, "Bad_Name", "-photos", "a..b", "192.168.1.1", ".s3gateway"],
    )
    def test_invalid_name(self, gateway, name):
        with pytest.raises(InvalidArgument):
            gateway.make_bucket_with_location(name)

    @pytest.mark.parametrize("name", ["b", "b1", "a" * 63])
    def test_short_and_long_names(self, gateway, name):
        assert gateway.make_bucket_with_location(name).name == name
        assert gateway.get_bucket_info(name).name == name

    def test_missing(self, gateway):
        with pytest.raises(NotFound):
            gateway.get_bucket_info("nothing")

    def test_list_buckets_sorted(self, gateway):
        for name in ("zeta", "alpha", "photos-2"):
            gateway.make_bucket_with_location(name)
        names = [b.name for b in gateway.list_buckets()]
        assert names == ["alpha", "photos", "photos-2", "zeta"]

    def test_delete_empty(self, gateway):
        gateway.delete_bucket("photos")
        with pytest.raises(NotFound):
            gateway.get_bucket_info("photos")
        assert gateway.list_buckets() == []

    def test_delete_not_empty(self, gateway):
        _put(gateway, "a/b", b"x")
        with pytest.raises(InvalidArgument):
            gateway.delete_bucket("photos")
        gateway.delete_object("photos", "a/b")
        gateway.delete_bucket("photos")

    def test_delete_removes_policy(self, gateway):
        gateway.set_bucket_policies("photos", BucketPolicy.canned("photos"))
        gateway.delete_bucket("photos")
        gateway.make_bucket_with_location("photos")
        with pytest.raises(NotFound):
            gateway.get_bucket_policies("photos")

    def test_delete_missing(self, gateway):
        with pytest.raises(NotFound):
            gateway.delete_bucket("nothing")

    def test_storage_info(self, gateway):
        info = gateway.storage_info()
        assert info.backend == "filesystem"


class TestObjects:
    def test_b1_scenario(self, gateway):
        gateway.make_bucket_with_location("b1")
        _put(gateway, "k1", b"hello", {"x-custom": "v"}, bucket="b1")
        assert _get(gateway, "k1", bucket="b1") == b"hello"
        info = gateway.get_object_info("b1", "k1")
        assert info.size == 5
        assert info.etag == _md5(b"hello")
        assert info.metadata == {"x-custom": "v"}
        assert [o.key for o in gateway.list_objects("b1").objects] == ["k1"]

    def test_hello_roundtrip(self, gateway):
        info = _put(
            gateway,
            "hello",
            b"hello",
            {"Content-Type": "text/plain", "X-Custom": "v"},
        )
        assert info.etag == _md5(b"hello")
        assert info.size == 5
        assert _get(gateway, "hello") == b"hello"
        info = gateway.get_object_info("photos", "hello")
        assert info.size == 5
        assert info.etag == _md5(b"hello")
        assert info.content_type == "text/plain"
        assert info.metadata == {"x-custom": "v"}
        assert info.last_modified is not None

    def test_default_content_type(self, gateway):
        _put(gateway, "k", b"x")
        info = gateway.get_object_info("photos", "k")
        assert info.content_type == "application/octet-stream"

    def test_range(self, gateway):
        _put(gateway, "k", b"0123456789")
        assert _get(gateway, "k", offset=3, length=4) == b"3456"
        assert _get(gateway, "k", offset=8) == b"89"

    def test_invalid_range(self, gateway):
        _put(gateway, "k", b"0123")
        with pytest.raises(InvalidArgument):
            _get(gateway, "k", offset=10)
        with pytest.raises(InvalidArgument):
            _get(gateway, "k", offset=-1)

    def test_missing_object(self, gateway):
        with pytest.raises(NotFound):
            gateway.get_object_info("photos", "nope")
        with pytest.raises(NotFound):
            _get(gateway, "nope")

    def test_missing_bucket(self, gateway):
        with pytest.raises(NotFound, match="no such bucket"):
            _put(gateway, "k", b"x", bucket="nothing")

    def test_overwrite(self, gateway):
        _put(gateway, "k", b"one", {"x-a": "1"})
        _put(gateway, "k", b"two", {"x-b": "2"})
        assert _get(gateway, "k") == b"two"
        assert gateway.get_object_info("photos", "k").metadata == {"x-b": "2"}

    def test_content_length_must_match(self, gateway):
        with pytest.raises(InvalidArgument):
            _put(gateway, "k", b"hello", {"Content-Length": "3"})
        _put(gateway, "k", b"hello", {"Content-Length": "5"})

    def test_unsupported_metadata(self, gateway):
        with pytest.raises(InvalidArgument, match="bad key"):
            _put(gateway, "k", b"x", {"bad key": "v"})
        with pytest.raises(NotFound):
            gateway.get_object_info("photos", "k")

    def test_key_too_long(self, gateway):
        with pytest.raises(InvalidArgument):
            _put(gateway, "k" * 1025, b"x")

    def test_unicode_key(self, gateway):
        _put(gateway, "fotos/café.jpg", b"x")
        assert _get(gateway, "fotos/café.jpg") == b"x"

    def test_delete(self, gateway):
        _put(gateway, "k", b"x")
        gateway.delete_object("photos", "k")
        with pytest.raises(NotFound):
            gateway.get_object_info("photos", "k")
        with pytest.raises(NotFound):
            gateway.delete_object("photos", "k")

    def test_cancellation(self, gateway):
        data = b"x" * (CHUNK_SIZE * 3)
        _put(gateway, "big", data)
        cancel = threading.Event()
        writer = CancellingWriter(cancel)
        with pytest.raises(Timeout):
            gateway.get_object("photos", "big", writer, cancel=cancel)
        assert len(writer.chunks) == 1

    def test_cancelled_before_start(self, gateway):
        _put(gateway, "k", b"x")
        cancel = threading.Event()
        cancel.set()
        out = io.BytesIO()
        with pytest.raises(Timeout):
            gateway.get_object("photos", "k", out, cancel=cancel)
        assert out.getvalue() == b""


class TestCopy:
    def test_copy_keeps_metadata(self, gateway):
        _put(gateway, "src", b"data", {"Content-Type": "text/plain", "x-a": "1"})
        gateway.make_bucket_with_location("backup")
        info = gateway.copy_object("photos", "src", "backup", "dst")
        assert info.bucket == "backup"
        assert info.etag == _md5(b"data")
        assert _get(gateway, "dst", bucket="backup") == b"data"
        copied = gateway.get_object_info("backup", "dst")
        assert copied.content_type == "text/plain"
        assert copied.metadata == {"x-a": "1"}

    def test_copy_replaces_metadata(self, gateway):
        _put(gateway, "src", b"data", {"x-a": "1"})
        gateway.copy_object("photos", "src", "photos", "dst", {"x-b": "2"})
        assert gateway.get_object_info("photos", "dst").metadata == {"x-b": "2"}

    def test_copy_onto_itself(self, gateway):
        _put(gateway, "k", b"data", {"x-a": "1"})
        with pytest.raises(InvalidArgument):
            gateway.copy_object("photos", "k", "photos", "k")
        gateway.copy_object("photos", "k", "photos", "k", {"x-a": "2"})
        assert gateway.get_object_info("photos", "k").metadata == {"x-a": "2"}
        assert _get(gateway, "k") == b"data"

    def test_copy_missing_source(self, gateway):
        with pytest.raises(NotFound):
            gateway.copy_object("photos", "nope", "photos", "dst")


class TestListing:
    KEYS = ["a.txt", "dir/one", "dir/sub/two", "dir/three", "other/x", "z"]

    @pytest.fixture
    def filled(self, gateway):
        for key in self.KEYS:
            _put(gateway, key, b"x")
        return gateway

    def test_list_v1(self, filled):
        result = filled.list_objects("photos")
        assert [o.key for o in result.objects] == sorted(self.KEYS)
        assert not result.is_truncated
        assert result.next_marker == ""

    def test_list_v1_marker(self, filled):
        first = filled.list_objects("photos", max_keys=2)
        assert first.is_truncated
        assert first.next_marker == "dir/one"
        second = filled.list_objects("photos", marker=first.next_marker)
        assert [o.key for o in second.objects] == sorted(self.KEYS)[2:]

    def test_list_v1_delimiter(self, filled):
        result = filled.list_objects("photos", delimiter="/")
        assert [o.key for o in result.objects] == ["a.txt", "z"]
        assert result.prefixes == ["dir/", "other/"]

    def test_list_v2_pages(self, filled):
        seen = []
        token = ""
        while True:
            result = filled.list_objects_v2(
                "photos", continuation_token=token, delimiter="/", max_keys=1
            )
            assert result.key_count == 1
            seen.extend(o.key for o in result.objects)
            seen.extend(result.prefixes)
            if not result.is_truncated:
                assert result.next_continuation_token == ""
                break
            token = result.next_continuation_token
        assert seen == ["a.txt", "dir/", "other/", "z"]

    def test_list_v2_start_after(self, filled):
        result = filled.list_objects_v2("photos", prefix="dir/", start_after="dir/one")
        assert [o.key for o in result.objects] == ["dir/sub/two", "dir/three"]

    def test_list_v2_fetch_owner(self, tmp_path):
        gw = _make_gateway(tmp_path, owner="owner-1")
        gw.make_bucket_with_location("photos")
        _put(gw, "k", b"x")
        assert gw.list_objects_v2("photos").objects[0].owner is None
        listing = gw.list_objects_v2("photos", fetch_owner=True)
        assert listing.objects[0].owner == "owner-1"
        gw.shutdown()

    def test_list_v2_bad_token(self, filled):
        with pytest.raises(InvalidArgument):
            filled.list_objects_v2("photos", continuation_token="garbage!")

    def test_list_reports_metadata(self, gateway):
        _put(gateway, "k", b"hello", {"Content-Type": "text/plain"})
        (info,) = gateway.list_objects("photos").objects
        assert info.size == 5
        assert info.etag == _md5(b"hello")
        assert info.content_type == "text/plain"

    def test_key_named_like_metadata_file(self, gateway):
        _put(gateway, "x", b"one", {"x-a": "1"})
        _put(gateway, "x.json/y", b"two")
        assert _get(gateway, "x") == b"one"
        assert gateway.get_object_info("photos", "x").metadata == {"x-a": "1"}
        assert _get(gateway, "x.json/y") == b"two"
        result = gateway.list_objects_v2("photos")
        assert [o.key for o in result.objects] == ["x", "x.json/y"]

    def test_conflicting_key_keeps_listing(self, gateway):
        _put(gateway, "x", b"one")
        with pytest.raises(InvalidArgument):
            _put(gateway, "x/y", b"two")
        assert [o.key for o in gateway.list_objects("photos").objects] == ["x"]
        assert _get(gateway, "x") == b"one"

    def test_buckets_do_not_leak(self, filled):
        filled.make_bucket_with_location("photos2")
        _put(filled, "k", b"x", bucket="photos2")
        assert [o.key for o in filled.list_objects("photos2").objects] == ["k"]
        assert "k" not in [o.key for o in filled.list_objects("photos").objects]


class TestMultipart:
    def test_two_parts(self, gateway):
        upload_id = gateway.new_multipart_upload(
            "photos", "big", {"Content-Type": "text/plain"}
        )
        a = gateway.put_object_part("photos", "big", upload_id, 1, io.BytesIO(b"AA"), 2)
        b = gateway.put_object_part("photos", "big", upload_id, 2, io.BytesIO(b"BB"), 2)
        info = gateway.complete_multipart_upload(
            "photos", "big", upload_id, [(1, a.etag), (2, b.etag)]
        )
        assert info.size == 4
        assert info.etag == _md5(b"AABB")
        assert _get(gateway, "big") == b"AABB"
        assert gateway.get_object_info("photos", "big").content_type == "text/plain"
        with pytest.raises(NotFound):
            gateway.list_object_parts("photos", "big", upload_id)

    def test_parts_in_any_order(self, gateway):
        upload_id = gateway.new_multipart_upload("photos", "big")
        b = gateway.put_object_part("photos", "big", upload_id, 2, io.BytesIO(b"BB"), 2)
        a = gateway.put_object_part("photos", "big", upload_id, 1, io.BytesIO(b"AA"), 2)
        gateway.complete_multipart_upload(
            "photos",
            "big",
            upload_id,
            [CompletePart(2, b.etag), CompletePart(1, a.etag)],
        )
        assert _get(gateway, "big") == b"AABB"

    def test_never_uploaded_part(self, gateway):
        upload_id = gateway.new_multipart_upload("photos", "big")
        a = gateway.put_object_part("photos", "big", upload_id, 1, io.BytesIO(b"AA"), 2)
        with pytest.raises(InvalidArgument):
            gateway.complete_multipart_upload(
                "photos", "big", upload_id, [(1, a.etag), (3, _md5(b"CC"))]
            )
        session = gateway.multipart.get_session(upload_id)
        assert session.state is SessionState.UPLOADING
        with pytest.raises(NotFound):
            gateway.get_object_info("photos", "big")

    def test_reupload_replaces_part(self, gateway):
        upload_id = gateway.new_multipart_upload("photos", "big")
        gateway.put_object_part("photos", "big", upload_id, 1, io.BytesIO(b"old"), 3)
        new = gateway.put_object_part(
            "photos", "big", upload_id, 1, io.BytesIO(b"new"), 3
        )
        parts = gateway.list_object_parts("photos", "big", upload_id).parts
        assert [(p.part_number, p.etag) for p in parts] == [(1, new.etag)]
        gateway.complete_multipart_upload("photos", "big", upload_id, [(1, new.etag)])
        assert _get(gateway, "big") == b"new"

    def test_abort(self, gateway):
        upload_id = gateway.new_multipart_upload("photos", "big")
        gateway.abort_multipart_upload("photos", "big", upload_id)
        with pytest.raises(NotFound):
            gateway.put_object_part(
                "photos", "big", upload_id, 1, io.BytesIO(b"AA"), 2
            )

    def test_upload_bound_to_its_object(self, gateway):
        upload_id = gateway.new_multipart_upload("photos", "big")
        with pytest.raises(NotFound):
            gateway.put_object_part(
                "photos", "other", upload_id, 1, io.BytesIO(b"AA"), 2
            )

    def test_missing_bucket(self, gateway):
        with pytest.raises(NotFound):
            gateway.new_multipart_upload("nothing", "big")

    def test_bad_metadata_fails_early(self, gateway):
        with pytest.raises(InvalidArgument):
            gateway.new_multipart_upload("photos", "big", {"ETag": "x"})
        assert len(gateway.multipart) == 0

    def test_list_uploads(self, gateway):
        first = gateway.new_multipart_upload("photos", "a")
        gateway.new_multipart_upload("photos", "b")
        listing = gateway.list_multipart_uploads("photos")
        assert [u.key for u in listing.uploads] == ["a", "b"]
        assert listing.uploads[0].upload_id == first

    def test_copy_part(self, gateway):
        _put(gateway, "src", b"0123456789")
        upload_id = gateway.new_multipart_upload("photos", "big")
        part = gateway.copy_object_part(
            "photos", "src", "photos", "big", upload_id, 1, offset=2, length=3
        )
        assert part.etag == _md5(b"234")
        assert part.size == 3
        tail = gateway.copy_object_part("photos", "src", "photos", "big", upload_id, 2)
        gateway.complete_multipart_upload(
            "photos", "big", upload_id, [(1, part.etag), (2, tail.etag)]
        )
        assert _get(gateway, "big") == b"2340123456789"

    def test_copy_part_bad_range(self, gateway):
        _put(gateway, "src", b"0123")
        upload_id = gateway.new_multipart_upload("photos", "big")
        with pytest.raises(InvalidArgument):
            gateway.copy_object_part(
                "photos", "src", "photos", "big", upload_id, 1, offset=2, length=10
            )


class TestPolicies:
    def test_set_get_delete(self, gateway):
        canned = BucketPolicy.canned("photos", "public/", "readonly")
        gateway.set_bucket_policies("photos", canned)
        assert gateway.get_bucket_policies("photos") == canned
        gateway.delete_bucket_policies("photos")
        with pytest.raises(NotFound):
            gateway.get_bucket_policies("photos")
        with pytest.raises(NotFound):
            gateway.delete_bucket_policies("photos")

    def test_set_from_json(self, gateway):
        text = BucketPolicy.canned("photos").to_json()
        gateway.set_bucket_policies("photos", text)
        assert gateway.get_bucket_policies("photos").to_json() == text

    def test_foreign_resource_rejected(self, gateway):
        with pytest.raises(InvalidArgument):
            gateway.set_bucket_policies("photos", BucketPolicy.canned("videos"))

    def test_policy_not_an_object(self, gateway):
        gateway.set_bucket_policies("photos", BucketPolicy.canned("photos"))
        assert [o.key for o in gateway.list_objects("photos").objects] == []


class TestAnonymous:
    def test_put_denied_without_policy(self, gateway):
        with pytest.raises(AccessDenied):
            _put(gateway, "k", b"x", identity=ANONYMOUS)
        with pytest.raises(NotFound):
            gateway.get_object_info("photos", "k")

    def test_readonly_policy(self, gateway):
        gateway.set_bucket_policies(
            "photos", BucketPolicy.canned("photos", "public/", "readonly")
        )
        _put(gateway, "public/a", b"A")
        _put(gateway, "private/b", b"B")
        assert _get(gateway, "public/a", identity=ANONYMOUS) == b"A"
        with pytest.raises(AccessDenied):
            _get(gateway, "private/b", identity=ANONYMOUS)
        with pytest.raises(AccessDenied):
            _put(gateway, "public/c", b"C", identity=ANONYMOUS)
        listing = gateway.list_objects("photos", identity=ANONYMOUS)
        assert len(listing.objects) == 2

    def test_readwrite_policy(self, gateway):
        gateway.set_bucket_policies(
            "photos", BucketPolicy.canned("photos", access="readwrite")
        )
        _put(gateway, "k", b"x", identity=ANONYMOUS)
        assert _get(gateway, "k", identity=ANONYMOUS) == b"x"
        gateway.delete_object("photos", "k", identity=ANONYMOUS)

    def test_backend_without_anonymous_writes(self, tmp_path):
        gw = _make_gateway(tmp_path, anonymous_writes=False)
        gw.make_bucket_with_location("photos")
        gw.set_bucket_policies(
            "photos", BucketPolicy.canned("photos", access="readwrite")
        )
        with pytest.raises(NotSupported):
            _put(gw, "k", b"x", identity=ANONYMOUS)
        with pytest.raises(NotFound):
            gw.get_object_info("photos", "k")
        gw.shutdown()

    def test_account_operations_denied(self, gateway):
        with pytest.raises(AccessDenied):
            gateway.list_buckets(identity=ANONYMOUS)
        with pytest.raises(AccessDenied):
            gateway.make_bucket_with_location("videos", identity=ANONYMOUS)
        with pytest.raises(AccessDenied):
            gateway.delete_bucket("photos", identity=ANONYMOUS)
        with pytest.raises(AccessDenied):
            gateway.get_bucket_policies("photos", identity=ANONYMOUS)

    def test_unknown_bucket(self, gateway):
        with pytest.raises(AccessDenied):
            gateway.get_object_info("nothing", "k", identity=ANONYMOUS)
