"""Bucket access policies in the S3 JSON policy grammar.

Only what anonymous access decisions need is modelled: ``Effect``,
``Principal``, ``Action`` and ``Resource`` with ``*``/``?`` wildcards.
An explicit Deny beats any Allow; anything not allowed is denied.
"""

from __future__ import annotations

from dataclasses import dataclass
from s3gateway.errors import InvalidArgument
from s3gateway.errors import NotSupported

import functools
import json
import re


DEFAULT_VERSION = "2012-10-17"
ARN_PREFIX = "arn:aws:s3:::"
ALLOW = "Allow"
DENY = "Deny"
ANONYMOUS = "*"

GET_BUCKET_LOCATION = "s3:GetBucketLocation"
LIST_BUCKET = "s3:ListBucket"
LIST_BUCKET_MULTIPART_UPLOADS = "s3:ListBucketMultipartUploads"
GET_OBJECT = "s3:GetObject"
PUT_OBJECT = "s3:PutObject"
DELETE_OBJECT = "s3:DeleteObject"
ABORT_MULTIPART_UPLOAD = "s3:AbortMultipartUpload"
LIST_MULTIPART_UPLOAD_PARTS = "s3:ListMultipartUploadParts"

WRITE_ACTIONS = frozenset({PUT_OBJECT, DELETE_OBJECT, ABORT_MULTIPART_UPLOAD})

_READ_BUCKET_ACTIONS = (GET_BUCKET_LOCATION, LIST_BUCKET)
_WRITE_BUCKET_ACTIONS = (GET_BUCKET_LOCATION, LIST_BUCKET_MULTIPART_UPLOADS)
_READ_OBJECT_ACTIONS = (GET_OBJECT,)
_WRITE_OBJECT_ACTIONS = (
    ABORT_MULTIPART_UPLOAD,
    DELETE_OBJECT,
    LIST_MULTIPART_UPLOAD_PARTS,
    PUT_OBJECT,
)


@functools.lru_cache(maxsize=512)
def _pattern(glob):
    return re.compile(re.escape(glob).replace(r"\*", ".*").replace(r"\?", "."))


def wildcard_match(glob, value):
    return _pattern(glob).fullmatch(value) is not None


def resource_arn(bucket, key=None):
    if key is None:
        return f"{ARN_PREFIX}{bucket}"
    return f"{ARN_PREFIX}{bucket}/{key}"


def _as_tuple(value, name):
    if isinstance(value, str):
        return (value,)
    if isinstance(value, list) and value and all(isinstance(v, str) for v in value):
        return tuple(value)
    raise InvalidArgument(f"policy {name} must be a string or list of strings")


def _principals(value):
    if value == ANONYMOUS:
        return (ANONYMOUS,)
    if isinstance(value, dict) and "AWS" in value:
        return _as_tuple(value["AWS"], "Principal")
    raise InvalidArgument("policy Principal must be '*' or {'AWS': ...}")


@dataclass(frozen=True, slots=True)
class Statement:
    effect: str
    actions: tuple[str, ...]
    resources: tuple[str, ...]
    principals: tuple[str, ...] = (ANONYMOUS,)
    sid: str = ""

    @classmethod
    def from_dict(cls, doc):
        if not isinstance(doc, dict):
            raise InvalidArgument("policy Statement must be an object")
        if "Condition" in doc:
            raise NotSupported("policy conditions are not supported")
        effect = doc.get("Effect")
        if effect not in (ALLOW, DENY):
            raise InvalidArgument(f"invalid policy Effect: {effect!r}")
        if "Action" not in doc or "Resource" not in doc:
            raise InvalidArgument("policy Statement needs Action and Resource")
        return cls(
            effect=effect,
            actions=_as_tuple(doc["Action"], "Action"),
            resources=_as_tuple(doc["Resource"], "Resource"),
            principals=_principals(doc.get("Principal", ANONYMOUS)),
            sid=doc.get("Sid", ""),
        )

    def to_dict(self):
        doc = {
            "Effect": self.effect,
            "Principal": {"AWS": list(self.principals)},
            "Action": list(self.actions),
            "Resource": list(self.resources),
        }
        if self.sid:
            doc["Sid"] = self.sid
        return doc

    def matches(self, principal, action, resource):
        return (
            any(wildcard_match(p, principal) for p in self.principals)
            and any(wildcard_match(a, action) for a in self.actions)
            and any(wildcard_match(r, resource) for r in self.resources)
        )


class BucketPolicy:
    """A parsed bucket policy document."""

    def __init__(self, statements=(), version=DEFAULT_VERSION):
        self.statements = list(statements)
        self.version = version

    def __eq__(self, other):
        if not isinstance(other, BucketPolicy):
            return NotImplemented
        return self.version == other.version and self.statements == other.statements

    def __repr__(self):
        return f"<BucketPolicy {len(self.statements)} statement(s)>"

    @classmethod
    def from_json(cls, text):
        try:
            doc = json.loads(text)
        except (TypeError, ValueError) as e:
            raise InvalidArgument("bucket policy is not valid JSON") from e
        if not isinstance(doc, dict):
            raise InvalidArgument("bucket policy must be a JSON object")
        raw = doc.get("Statement", [])
        if isinstance(raw, dict):
            raw = [raw]
        if not isinstance(raw, list):
            raise InvalidArgument("policy Statement must be a list")
        return cls(
            [Statement.from_dict(s) for s in raw],
            version=doc.get("Version", DEFAULT_VERSION),
        )

    def to_json(self):
        return json.dumps(
            {
                "Version": self.version,
                "Statement": [s.to_dict() for s in self.statements],
            },
            sort_keys=True,
        )

    def validate_for(self, bucket):
        """Reject statements that reach outside ``bucket``."""
        own = resource_arn(bucket)
        for statement in self.statements:
            for resource in statement.resources:
                if resource != own and not resource.startswith(own + "/"):
                    raise InvalidArgument(
                        f"policy resource {resource!r} is outside bucket {bucket!r}"
                    )

    def is_allowed(self, action, bucket, key=None, principal=ANONYMOUS):
        resource = resource_arn(bucket, key)
        allowed = False
        for statement in self.statements:
            if not statement.matches(principal, action, resource):
                continue
            if statement.effect == DENY:
                return False
            allowed = True
        return allowed

    @classmethod
    def canned(cls, bucket, prefix="", access="readonly"):
        """Build one of the canned none/readonly/writeonly/readwrite policies."""
        if access not in ("none", "readonly", "writeonly", "readwrite"):
            raise InvalidArgument(f"unknown canned policy {access!r}")
        bucket_actions = set()
        object_actions = set()
        if access in ("readonly", "readwrite"):
            bucket_actions.update(_READ_BUCKET_ACTIONS)
            object_actions.update(_READ_OBJECT_ACTIONS)
        if access in ("writeonly", "readwrite"):
            bucket_actions.update(_WRITE_BUCKET_ACTIONS)
            object_actions.update(_WRITE_OBJECT_ACTIONS)
        statements = []
        if bucket_actions:
            statements.append(
                Statement(ALLOW, tuple(sorted(bucket_actions)), (resource_arn(bucket),))
            )
        if object_actions:
            statements.append(
                Statement(
                    ALLOW,
                    tuple(sorted(object_actions)),
                    (resource_arn(bucket, prefix + "*"),),
                )
            )
        return cls(statements)
