"""Multipart upload emulation for backends without a notion of parts.

Parts are staged as local files under a private staging directory and
concatenated into a single backend object on completion. Sessions live in
memory only: an upload in flight when the process stops is lost, and
:meth:`MultipartCoordinator.close` says so in the log.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from s3gateway.datatypes import ListMultipartsInfo
from s3gateway.datatypes import ListPartsInfo
from s3gateway.datatypes import MultipartInfo
from s3gateway.datatypes import PartInfo
from s3gateway.errors import InvalidArgument
from s3gateway.errors import NotFound
from s3gateway.interfaces import IMultipartCoordinator
from s3gateway.pagination import common_prefix
from zope.interface import implementer

import contextlib
import enum
import hashlib
import logging
import os
import shutil
import tempfile
import threading
import uuid


logger = logging.getLogger(__name__)

MIN_PART_NUMBER = 1
MAX_PART_NUMBER = 10000
MAX_LISTING = 1000
CHUNK_SIZE = 1024 * 1024


class SessionState(enum.Enum):
    INITIATED = "initiated"
    UPLOADING = "uploading"
    COMPLETING = "completing"
    COMPLETED = "completed"
    ABORTED = "aborted"


_OPEN_STATES = (SessionState.INITIATED, SessionState.UPLOADING)


@dataclass(frozen=True, slots=True)
class PartRecord:
    part_number: int
    etag: str
    size: int
    path: str
    last_modified: datetime

    def info(self):
        return PartInfo(self.part_number, self.etag, self.size, self.last_modified)


class UploadSession:
    """One in-flight upload. ``lock`` guards ``parts`` and ``state``."""

    def __init__(self, upload_id, bucket, key, metadata, directory):
        self.upload_id = upload_id
        self.bucket = bucket
        self.key = key
        self.metadata = dict(metadata or {})
        self.directory = directory
        self.initiated = datetime.now(timezone.utc)
        self.state = SessionState.INITIATED
        self.parts = {}
        self.lock = threading.Lock()

    def __repr__(self):
        return (
            f"<UploadSession {self.upload_id} {self.bucket}/{self.key} "
            f"{self.state.value} parts={len(self.parts)}>"
        )

    def info(self):
        return MultipartInfo(self.bucket, self.key, self.upload_id, self.initiated)


class PartsReader:
    """Read staged part files back to back as one stream."""

    def __init__(self, records):
        self._paths = [r.path for r in records]
        self._current = None

    def read(self, size=-1):
        chunks = []
        remaining = size
        while self._paths or self._current is not None:
            if self._current is None:
                self._current = open(self._paths.pop(0), "rb")
            chunk = self._current.read(remaining if remaining >= 0 else -1)
            if chunk:
                chunks.append(chunk)
                if remaining >= 0:
                    remaining -= len(chunk)
                    if remaining == 0:
                        break
                continue
            self._current.close()
            self._current = None
        return b"".join(chunks)

    def close(self):
        if self._current is not None:
            self._current.close()
            self._current = None
        self._paths = []


def normalize_etag(etag):
    return (etag or "").strip().strip('"').lower()


def check_part_number(part_number):
    if (
        isinstance(part_number, bool)
        or not isinstance(part_number, int)
        or not MIN_PART_NUMBER <= part_number <= MAX_PART_NUMBER
    ):
        raise InvalidArgument(
            f"part number must be an integer between {MIN_PART_NUMBER} "
            f"and {MAX_PART_NUMBER}, got {part_number!r}"
        )


@implementer(IMultipartCoordinator)
class MultipartCoordinator:
    """Session table of in-flight multipart uploads.

    The table itself is only touched through single dict operations; each
    session carries its own lock, so uploads never contend with each other.
    """

    def __init__(self, staging_dir=None, max_age=None, gc_interval=None):
        self._owns_staging_dir = staging_dir is None
        self._staging_dir = staging_dir or tempfile.mkdtemp(prefix="s3gateway-")
        os.makedirs(self._staging_dir, exist_ok=True, mode=0o700)
        self.max_age = max_age
        self._sessions = {}
        self._reaper = None
        self._stop = threading.Event()
        if gc_interval:
            self.start_reaper(gc_interval)

    @property
    def staging_dir(self):
        return self._staging_dir

    def __len__(self):
        return len(self._sessions)

    # -- Session lifecycle --

    def initiate(self, bucket, key, metadata=None):
        upload_id = uuid.uuid4().hex
        directory = os.path.join(self._staging_dir, upload_id)
        os.makedirs(directory, mode=0o700)
        self._sessions[upload_id] = UploadSession(
            upload_id, bucket, key, metadata, directory
        )
        logger.debug("Initiated multipart upload %s for %s/%s", upload_id, bucket, key)
        return upload_id

    def get_session(self, upload_id, bucket=None, key=None):
        """Return the open session; NotFound if unknown or for another object."""
        session = self._sessions.get(upload_id)
        if (
            session is None
            or (bucket is not None and session.bucket != bucket)
            or (key is not None and session.key != key)
        ):
            raise NotFound(f"no such upload: {upload_id}", "multipart", upload_id)
        return session

    def put_part(self, upload_id, part_number, reader, size, md5_hex=""):
        check_part_number(part_number)
        session = self.get_session(upload_id)
        record = self._stage(session, part_number, reader, size)
        if md5_hex and normalize_etag(md5_hex) != record.etag:
            self._discard(record)
            raise InvalidArgument(
                f"part {part_number}: content MD5 does not match", "put_part", upload_id
            )
        with session.lock:
            if session.state not in _OPEN_STATES:
                replaced = record
                accepted = False
            else:
                replaced = session.parts.get(part_number)
                session.parts[part_number] = record
                session.state = SessionState.UPLOADING
                accepted = True
        if replaced is not None:
            self._discard(replaced)
        if not accepted:
            raise NotFound(f"no such upload: {upload_id}", "put_part", upload_id)
        return record.info()

    def _stage(self, session, part_number, reader, size):
        try:
            fd, path = tempfile.mkstemp(
                dir=session.directory, prefix=f"{part_number:05d}.", suffix=".part"
            )
        except FileNotFoundError as e:
            # session directory is gone: aborted concurrently
            raise NotFound(
                f"no such upload: {session.upload_id}", "put_part", session.upload_id
            ) from e
        md5 = hashlib.md5()
        written = 0
        try:
            with os.fdopen(fd, "wb") as f:
                while size < 0 or written < size:
                    want = CHUNK_SIZE if size < 0 else min(CHUNK_SIZE, size - written)
                    chunk = reader.read(want)
                    if not chunk:
                        break
                    f.write(chunk)
                    md5.update(chunk)
                    written += len(chunk)
            if size >= 0 and written != size:
                raise InvalidArgument(
                    f"part {part_number}: expected {size} bytes, got {written}",
                    "put_part",
                    session.upload_id,
                )
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(path)
            raise
        return PartRecord(
            part_number=part_number,
            etag=md5.hexdigest(),
            size=written,
            path=path,
            last_modified=datetime.now(timezone.utc),
        )

    def complete(self, upload_id, parts, store):
        """Assemble the claimed parts, in ascending part-number order.

        ``parts`` is a sequence of CompletePart; ``store(reader, size)`` writes
        the assembled object and its result is returned. Claims that do not
        match staged parts raise InvalidArgument and leave the session open.
        """
        claims = self._check_claims(upload_id, parts)
        session = self.get_session(upload_id)
        with session.lock:
            if session.state not in _OPEN_STATES:
                raise NotFound(f"no such upload: {upload_id}", "complete", upload_id)
            records = []
            for claim in claims:
                record = session.parts.get(claim.part_number)
                if record is None:
                    raise InvalidArgument(
                        f"part {claim.part_number} was never uploaded",
                        "complete",
                        upload_id,
                    )
                if normalize_etag(claim.etag) != record.etag:
                    raise InvalidArgument(
                        f"part {claim.part_number}: checksum does not match",
                        "complete",
                        upload_id,
                    )
                records.append(record)
            session.state = SessionState.COMPLETING
            reader = PartsReader(records)
            try:
                result = store(reader, sum(r.size for r in records))
            except BaseException:
                session.state = SessionState.UPLOADING
                raise
            finally:
                reader.close()
            session.state = SessionState.COMPLETED
            self._sessions.pop(upload_id, None)
        self._release(session)
        logger.debug(
            "Completed multipart upload %s with %d part(s)", upload_id, len(records)
        )
        return result

    def _check_claims(self, upload_id, parts):
        if not parts:
            raise InvalidArgument(
                "at least one part is required", "complete", upload_id
            )
        seen = set()
        for claim in parts:
            check_part_number(claim.part_number)
            if claim.part_number in seen:
                raise InvalidArgument(
                    f"part {claim.part_number} listed more than once",
                    "complete",
                    upload_id,
                )
            seen.add(claim.part_number)
        return sorted(parts, key=lambda claim: claim.part_number)

    def abort(self, upload_id):
        session = self.get_session(upload_id)
        with session.lock:
            if session.state not in _OPEN_STATES:
                raise NotFound(f"no such upload: {upload_id}", "abort", upload_id)
            session.state = SessionState.ABORTED
            self._sessions.pop(upload_id, None)
        self._release(session)
        logger.debug("Aborted multipart upload %s", upload_id)

    def abort_expired(self, max_age=None, now=None):
        """Abort sessions initiated more than ``max_age`` seconds ago."""
        max_age = self.max_age if max_age is None else max_age
        if max_age is None:
            return 0
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(seconds=max_age)
        aborted = 0
        for upload_id, session in list(self._sessions.items()):
            if session.initiated >= cutoff:
                continue
            try:
                self.abort(upload_id)
            except NotFound:
                continue
            aborted += 1
        if aborted:
            logger.info("GC: aborted %d expired multipart upload(s)", aborted)
        return aborted

    # -- Listings --

    def list_parts(self, upload_id, part_number_marker=0, max_parts=MAX_LISTING):
        session = self.get_session(upload_id)
        max_parts = max(0, min(max_parts, MAX_LISTING))
        with session.lock:
            records = sorted(
                (r for n, r in session.parts.items() if n > part_number_marker),
                key=lambda r: r.part_number,
            )
        page = records[:max_parts]
        truncated = len(records) > len(page)
        return ListPartsInfo(
            bucket=session.bucket,
            key=session.key,
            upload_id=upload_id,
            parts=[r.info() for r in page],
            part_number_marker=part_number_marker,
            next_part_number_marker=page[-1].part_number if page else 0,
            max_parts=max_parts,
            is_truncated=truncated,
        )

    def list_uploads(
        self,
        bucket,
        prefix="",
        key_marker="",
        upload_id_marker="",
        delimiter="",
        max_uploads=MAX_LISTING,
    ):
        max_uploads = max(0, min(max_uploads, MAX_LISTING))
        candidates = sorted(
            (
                s
                for s in list(self._sessions.values())
                if s.bucket == bucket
                and s.key.startswith(prefix)
                and s.state in _OPEN_STATES
            ),
            key=lambda s: (s.key, s.upload_id),
        )
        uploads = []
        prefixes = []
        truncated = False
        next_key = next_id = ""
        for session in candidates:
            if key_marker and (
                session.key < key_marker
                or (
                    session.key == key_marker
                    and (not upload_id_marker or session.upload_id <= upload_id_marker)
                )
            ):
                continue
            rollup = common_prefix(session.key, prefix, delimiter)
            if rollup is not None and (
                rollup == key_marker or (prefixes and prefixes[-1] == rollup)
            ):
                continue
            if len(uploads) + len(prefixes) == max_uploads:
                truncated = True
                break
            if rollup is not None:
                prefixes.append(rollup)
                next_key, next_id = rollup, ""
            else:
                uploads.append(session.info())
                next_key, next_id = session.key, session.upload_id
        return ListMultipartsInfo(
            uploads=uploads,
            prefixes=prefixes,
            key_marker=key_marker,
            upload_id_marker=upload_id_marker,
            next_key_marker=next_key if truncated else "",
            next_upload_id_marker=next_id if truncated else "",
            max_uploads=max_uploads,
            is_truncated=truncated,
        )

    # -- Cleanup --

    def _discard(self, record):
        with contextlib.suppress(OSError):
            os.remove(record.path)

    def _release(self, session):
        with contextlib.suppress(OSError):
            shutil.rmtree(session.directory)

    def start_reaper(self, interval):
        """Start the background thread aborting expired sessions."""
        if self._reaper is not None and self._reaper.is_alive():
            return
        self._stop.clear()
        t = threading.Thread(
            target=self._reap,
            args=(interval,),
            name="s3gateway-multipart-gc",
            daemon=True,
        )
        self._reaper = t
        t.start()

    def _reap(self, interval):
        while not self._stop.wait(interval):
            try:
                self.abort_expired()
            except Exception:
                logger.exception("Error during multipart garbage collection")

    def close(self):
        self._stop.set()
        if self._reaper is not None:
            self._reaper.join(timeout=10)
            self._reaper = None
        sessions = list(self._sessions.values())
        self._sessions.clear()
        if sessions:
            logger.warning(
                "Discarding %d in-flight multipart upload(s); they cannot be "
                "resumed after shutdown",
                len(sessions),
            )
        for session in sessions:
            self._release(session)
        if self._owns_staging_dir:
            with contextlib.suppress(OSError):
                shutil.rmtree(self._staging_dir)
