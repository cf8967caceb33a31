from datetime import datetime
from datetime import timezone
from s3gateway.datatypes import BackendEntry
from s3gateway.datatypes import PutReceipt
from s3gateway.datatypes import StorageInfo
from s3gateway.errors import InternalError
from s3gateway.errors import InvalidArgument
from s3gateway.errors import NotFound
from s3gateway.errors import normalize
from s3gateway.interfaces import IBackendClient
from s3gateway.metadata import MetadataRules
from zope.interface import implementer

import contextlib
import hashlib
import json
import logging
import os
import shutil
import tempfile


logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


class RangeReader:
    """Reads at most ``length`` bytes (-1: all) from an open file."""

    def __init__(self, f, length=-1):
        self._f = f
        self._remaining = length

    def read(self, size=-1):
        if self._remaining == 0:
            return b""
        if self._remaining > 0 and (size < 0 or size > self._remaining):
            size = self._remaining
        data = self._f.read(size)
        if self._remaining > 0:
            self._remaining -= len(data)
        return data

    def close(self):
        self._f.close()


@implementer(IBackendClient)
class FilesystemBackend:
    """Directory-oriented store on a local or mounted filesystem.

    Payloads are stored as {root}/data/{path}. Native metadata goes to a
    JSON sidecar under {root}/meta, named by the SHA-256 of the path so
    that no key can reach it. Writes are staged in {root}/tmp and moved
    into place. Listings follow directory walk order, not key order.
    """

    ordered_listing = False
    metadata_rules = MetadataRules()

    def __init__(self, root, anonymous_writes=True):
        self.root = root
        self.anonymous_writes = anonymous_writes
        self._data_dir = os.path.join(root, "data")
        self._meta_dir = os.path.join(root, "meta")
        self._tmp_dir = os.path.join(root, "tmp")
        for d in (self._data_dir, self._meta_dir, self._tmp_dir):
            os.makedirs(d, exist_ok=True, mode=0o700)

    def __repr__(self):
        return f"<FilesystemBackend {self.root!r}>"

    def _segments(self, path):
        segments = path.split("/")
        if "\x00" in path or any(s in ("", ".", "..") for s in segments):
            raise InvalidArgument(f"path not representable on a filesystem: {path!r}")
        return segments

    def _data_path(self, path):
        return os.path.join(self._data_dir, *self._segments(path))

    def _meta_path(self, path):
        self._segments(path)
        digest = hashlib.sha256(path.encode("utf-8")).hexdigest()
        return os.path.join(self._meta_dir, digest[:2], digest + ".json")

    def _wrap(self, e, operation, path):
        raise normalize(e, operation, path) from e

    def _stage(self, chunks):
        fd, tmp_path = tempfile.mkstemp(dir=self._tmp_dir, suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                for chunk in chunks:
                    f.write(chunk)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp_path)
            raise
        return tmp_path

    def put(self, path, reader, size, metadata):
        target = self._data_path(path)
        md5 = hashlib.md5()
        written = 0

        def chunks():
            nonlocal written
            while size < 0 or written < size:
                want = CHUNK_SIZE if size < 0 else min(CHUNK_SIZE, size - written)
                chunk = reader.read(want)
                if not chunk:
                    break
                md5.update(chunk)
                written += len(chunk)
                yield chunk
            if size >= 0 and written != size:
                raise InvalidArgument(
                    f"expected {size} bytes, got {written}", "put", path
                )

        meta_target = self._meta_path(path)
        staged = []
        try:
            staged.append(self._stage(chunks()))
            etag = md5.hexdigest()
            sidecar = {"etag": etag, "size": written, "metadata": dict(metadata)}
            staged.append(self._stage([json.dumps(sidecar).encode("utf-8")]))
            os.makedirs(os.path.dirname(meta_target), exist_ok=True)
            os.makedirs(os.path.dirname(target), exist_ok=True)
            os.replace(staged[0], target)
            try:
                os.replace(staged[1], meta_target)
            except OSError:
                # never leave a payload without its sidecar
                with contextlib.suppress(OSError):
                    os.remove(target)
                raise
            mtime = os.stat(target).st_mtime
        except (FileExistsError, NotADirectoryError, IsADirectoryError) as e:
            raise InvalidArgument(
                f"path conflicts with an existing object or prefix: {path}",
                "put",
                path,
            ) from e
        except OSError as e:
            self._prune(os.path.dirname(target), self._data_dir)
            self._wrap(e, "put", path)
        finally:
            for tmp_path in staged:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_path)
        return PutReceipt(
            etag=etag,
            size=written,
            last_modified=datetime.fromtimestamp(mtime, timezone.utc),
        )

    def _stat_file(self, path, operation):
        target = self._data_path(path)
        try:
            st = os.stat(target)
        except (FileNotFoundError, NotADirectoryError) as e:
            raise NotFound(f"no such object: {path}", operation, path) from e
        except OSError as e:
            self._wrap(e, operation, path)
        if not os.path.isfile(target):
            raise NotFound(f"no such object: {path}", operation, path)
        return target, st

    def head(self, path):
        _target, st = self._stat_file(path, "head")
        sidecar = {}
        try:
            with open(self._meta_path(path), "rb") as f:
                sidecar = json.load(f)
        except FileNotFoundError:
            logger.debug("No metadata sidecar for %s", path)
        except (OSError, ValueError) as e:
            self._wrap(e, "head", path)
        return BackendEntry(
            path=path,
            size=st.st_size,
            etag=sidecar.get("etag", ""),
            last_modified=datetime.fromtimestamp(st.st_mtime, timezone.utc),
            metadata=sidecar.get("metadata", {}),
        )

    def get(self, path, offset=0, length=-1):
        target, st = self._stat_file(path, "get")
        if offset < 0 or (offset > 0 and offset >= st.st_size):
            raise InvalidArgument(f"invalid range offset {offset}", "get", path)
        if length >= 0:
            length = min(length, st.st_size - offset)
        try:
            f = open(target, "rb")
        except OSError as e:
            self._wrap(e, "get", path)
        f.seek(offset)
        return RangeReader(f, length)

    def delete(self, path):
        target, _st = self._stat_file(path, "delete")
        try:
            os.remove(target)
        except OSError as e:
            self._wrap(e, "delete", path)
        with contextlib.suppress(OSError):
            os.remove(self._meta_path(path))
        self._prune(os.path.dirname(target), self._data_dir)

    def _prune(self, directory, top):
        """Remove empty directories left behind, keeping the first level."""
        while (
            directory != top
            and os.path.dirname(directory) != top
            and directory.startswith(top)
        ):
            try:
                os.rmdir(directory)
            except OSError:
                break
            directory = os.path.dirname(directory)

    def _walk(self, prefix, start_after):
        base = prefix.rsplit("/", 1)[0] if "/" in prefix else ""
        try:
            top = self._data_path(base) if base else self._data_dir
        except InvalidArgument:
            return
        for dirpath, dirnames, filenames in os.walk(top):
            dirnames.sort()
            rel = os.path.relpath(dirpath, self._data_dir)
            rel = "" if rel == "." else rel.replace(os.sep, "/") + "/"
            for fn in sorted(filenames):
                path = rel + fn
                if path.startswith(prefix) and path > start_after:
                    yield path

    def list(self, prefix, cursor=None, limit=1000, start_after=""):
        try:
            offset = int(cursor) if cursor else 0
        except ValueError as e:
            raise InvalidArgument(
                f"bad listing cursor {cursor!r}", "list", prefix
            ) from e
        try:
            paths = list(self._walk(prefix, start_after))
        except OSError as e:
            self._wrap(e, "list", prefix)
        page = paths[offset : offset + limit]
        entries = []
        for path in page:
            try:
                entries.append(self.head(path))
            except NotFound:
                # removed since the walk
                continue
            except (InvalidArgument, InternalError) as e:
                logger.warning("Skipping unreadable entry %s: %s", path, e)
                continue
        next_cursor = str(offset + limit) if offset + limit < len(paths) else None
        return entries, next_cursor

    def mkdir(self, path):
        try:
            os.makedirs(self._data_path(path), mode=0o700)
        except OSError as e:
            self._wrap(e, "mkdir", path)

    def rmdir(self, path):
        try:
            os.rmdir(self._data_path(path))
        except OSError as e:
            self._wrap(e, "rmdir", path)

    def usage(self):
        try:
            du = shutil.disk_usage(self.root)
        except OSError as e:
            self._wrap(e, "usage", self.root)
        return StorageInfo(
            backend="filesystem", total_bytes=du.total, free_bytes=du.free
        )
