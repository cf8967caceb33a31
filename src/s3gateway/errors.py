"""Gateway-wide error taxonomy and the normalizer that maps backend errors
onto it.

Every backend call result passes through :func:`normalize` before reaching
the gateway's callers, so they only ever see :class:`GatewayError`
subclasses.
"""

from botocore.exceptions import BotoCoreError
from botocore.exceptions import ClientError
from botocore.exceptions import ConnectionClosedError
from botocore.exceptions import ConnectTimeoutError
from botocore.exceptions import EndpointConnectionError
from botocore.exceptions import ReadTimeoutError
from xml.etree import ElementTree

import enum
import errno
import json
import logging


logger = logging.getLogger(__name__)

NO_ERROR_DETAIL = "no error detail available"


class ErrorKind(enum.Enum):
    NOT_FOUND = "NotFound"
    ALREADY_EXISTS = "AlreadyExists"
    ACCESS_DENIED = "AccessDenied"
    INVALID_ARGUMENT = "InvalidArgument"
    NOT_IMPLEMENTED = "NotImplemented"
    TIMEOUT = "Timeout"
    UNAVAILABLE = "Unavailable"
    INTERNAL = "Internal"


class GatewayError(Exception):
    """Base class of every error the gateway reports."""

    kind = ErrorKind.INTERNAL
    retryable = False

    def __init__(self, message="", operation=None, resource=None):
        super().__init__(message or self.kind.value)
        self.message = message or self.kind.value
        self.operation = operation
        self.resource = resource

    def __repr__(self):
        return f"<{type(self).__name__} {self.kind.value}: {self.message!r}>"


class NotFound(GatewayError):
    kind = ErrorKind.NOT_FOUND


class AlreadyExists(GatewayError):
    kind = ErrorKind.ALREADY_EXISTS


class AccessDenied(GatewayError):
    kind = ErrorKind.ACCESS_DENIED


class InvalidArgument(GatewayError):
    kind = ErrorKind.INVALID_ARGUMENT


class NotSupported(GatewayError):
    """The backend cannot perform this operation at all."""

    kind = ErrorKind.NOT_IMPLEMENTED


class Timeout(GatewayError):
    kind = ErrorKind.TIMEOUT
    retryable = True


class Unavailable(GatewayError):
    kind = ErrorKind.UNAVAILABLE
    retryable = True


class InternalError(GatewayError):
    kind = ErrorKind.INTERNAL


_ERRORS_BY_KIND = {
    cls.kind: cls
    for cls in (
        NotFound,
        AlreadyExists,
        AccessDenied,
        InvalidArgument,
        NotSupported,
        Timeout,
        Unavailable,
        InternalError,
    )
}


def error_for_kind(kind):
    return _ERRORS_BY_KIND[kind]


class BackendHTTPError(Exception):
    """Raw HTTP error response from a backend speaking plain HTTP."""

    def __init__(self, status, body=b""):
        super().__init__(f"HTTP {status}")
        self.status = status
        self.body = body


# S3, Azure and Manta error codes
_CODE_KINDS = {
    "NoSuchKey": ErrorKind.NOT_FOUND,
    "NoSuchBucket": ErrorKind.NOT_FOUND,
    "NoSuchUpload": ErrorKind.NOT_FOUND,
    "NoSuchBucketPolicy": ErrorKind.NOT_FOUND,
    "NotFound": ErrorKind.NOT_FOUND,
    "ResourceNotFound": ErrorKind.NOT_FOUND,
    "ContainerNotFound": ErrorKind.NOT_FOUND,
    "BlobNotFound": ErrorKind.NOT_FOUND,
    "DirectoryDoesNotExist": ErrorKind.NOT_FOUND,
    "BucketAlreadyExists": ErrorKind.ALREADY_EXISTS,
    "BucketAlreadyOwnedByYou": ErrorKind.ALREADY_EXISTS,
    "ContainerAlreadyExists": ErrorKind.ALREADY_EXISTS,
    "AccessDenied": ErrorKind.ACCESS_DENIED,
    "Forbidden": ErrorKind.ACCESS_DENIED,
    "AuthorizationFailed": ErrorKind.ACCESS_DENIED,
    "InvalidAccessKeyId": ErrorKind.ACCESS_DENIED,
    "SignatureDoesNotMatch": ErrorKind.ACCESS_DENIED,
    "InvalidCredentials": ErrorKind.ACCESS_DENIED,
    "InvalidArgument": ErrorKind.INVALID_ARGUMENT,
    "InvalidRequest": ErrorKind.INVALID_ARGUMENT,
    "InvalidPart": ErrorKind.INVALID_ARGUMENT,
    "InvalidPartOrder": ErrorKind.INVALID_ARGUMENT,
    "InvalidBucketName": ErrorKind.INVALID_ARGUMENT,
    "InvalidRange": ErrorKind.INVALID_ARGUMENT,
    "EntityTooLarge": ErrorKind.INVALID_ARGUMENT,
    "EntityTooSmall": ErrorKind.INVALID_ARGUMENT,
    "KeyTooLongError": ErrorKind.INVALID_ARGUMENT,
    "MalformedXML": ErrorKind.INVALID_ARGUMENT,
    "BadRequest": ErrorKind.INVALID_ARGUMENT,
    "BucketNotEmpty": ErrorKind.INVALID_ARGUMENT,
    "DirectoryNotEmpty": ErrorKind.INVALID_ARGUMENT,
    "PreconditionFailed": ErrorKind.INVALID_ARGUMENT,
    "NotImplemented": ErrorKind.NOT_IMPLEMENTED,
    "MethodNotAllowed": ErrorKind.NOT_IMPLEMENTED,
    "RequestTimeout": ErrorKind.TIMEOUT,
    "GatewayTimeout": ErrorKind.TIMEOUT,
    "ServiceUnavailable": ErrorKind.UNAVAILABLE,
    "SlowDown": ErrorKind.UNAVAILABLE,
    "Throttling": ErrorKind.UNAVAILABLE,
    "ServerBusy": ErrorKind.UNAVAILABLE,
    "InternalError": ErrorKind.INTERNAL,
}

_STATUS_KINDS = {
    400: ErrorKind.INVALID_ARGUMENT,
    401: ErrorKind.ACCESS_DENIED,
    403: ErrorKind.ACCESS_DENIED,
    404: ErrorKind.NOT_FOUND,
    405: ErrorKind.NOT_IMPLEMENTED,
    408: ErrorKind.TIMEOUT,
    409: ErrorKind.ALREADY_EXISTS,
    411: ErrorKind.INVALID_ARGUMENT,
    412: ErrorKind.INVALID_ARGUMENT,
    413: ErrorKind.INVALID_ARGUMENT,
    416: ErrorKind.INVALID_ARGUMENT,
    429: ErrorKind.UNAVAILABLE,
    501: ErrorKind.NOT_IMPLEMENTED,
    503: ErrorKind.UNAVAILABLE,
    504: ErrorKind.TIMEOUT,
}


def kind_for(code=None, status=None):
    """Classify a backend error code and/or HTTP status."""
    if code:
        kind = _CODE_KINDS.get(code)
        if kind is not None:
            return kind
        # head requests report the bare status as the code
        if code.isdigit() and status is None:
            status = int(code)
    if status is not None:
        return _STATUS_KINDS.get(status, ErrorKind.INTERNAL)
    return ErrorKind.INTERNAL


def _parse_error_body(body):
    """Return (code, message) from an XML or JSON error body.

    Raises ValueError if the body is neither.
    """
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    text = body.strip()
    if text.startswith("{"):
        doc = json.loads(text)
        if not isinstance(doc, dict):
            raise ValueError("error body is not an object")
        return doc.get("code") or doc.get("Code"), doc.get("message") or doc.get(
            "Message", ""
        )
    try:
        root = ElementTree.fromstring(text)
    except ElementTree.ParseError as e:
        raise ValueError(str(e)) from e
    return root.findtext("Code"), root.findtext("Message") or ""


def normalize_http_error(status, body, operation=None, resource=None):
    """Build the taxonomy error for a raw HTTP error response.

    Never returns a success: non-error statuses, empty bodies and unparsable
    bodies all come back as :class:`InternalError`.
    """
    if not 400 <= status <= 599:
        return InternalError(
            f"unexpected status {status} treated as error", operation, resource
        )
    if not body or not body.strip():
        return InternalError(
            f"HTTP {status}: {NO_ERROR_DETAIL}", operation, resource
        )
    try:
        code, message = _parse_error_body(body)
    except ValueError:
        logger.debug("Unparsable error body for %s %s: %r", operation, resource, body)
        return InternalError(
            f"HTTP {status}: malformed error body", operation, resource
        )
    cls = error_for_kind(kind_for(code, status))
    detail = code or f"HTTP {status}"
    if message:
        detail = f"{detail}: {message}"
    return cls(detail, operation, resource)


def _from_client_error(e, operation, resource):
    error = e.response.get("Error", {})
    code = error.get("Code", "Unknown")
    status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    cls = error_for_kind(kind_for(code, status))
    return cls(f"{operation} failed for {resource}: {code}", operation, resource)


def _from_os_error(e, operation, resource):
    if isinstance(e, FileNotFoundError):
        cls = NotFound
    elif isinstance(e, FileExistsError):
        cls = AlreadyExists
    elif isinstance(e, PermissionError):
        cls = AccessDenied
    elif isinstance(e, (IsADirectoryError, NotADirectoryError)):
        cls = InvalidArgument
    elif e.errno == errno.ENOTEMPTY:
        cls = InvalidArgument
    elif isinstance(e, TimeoutError):
        cls = Timeout
    elif isinstance(e, ConnectionError):
        cls = Unavailable
    else:
        cls = InternalError
    reason = e.strerror or type(e).__name__
    return cls(f"{operation} failed for {resource}: {reason}", operation, resource)


def normalize(e, operation="", resource=""):
    """Map any exception raised at a backend boundary onto the taxonomy."""
    if isinstance(e, GatewayError):
        return e
    logger.debug("%s failed for %s: %r", operation, resource, e)
    if isinstance(e, ClientError):
        return _from_client_error(e, operation, resource)
    if isinstance(e, (ConnectTimeoutError, ReadTimeoutError)):
        return Timeout(f"{operation} timed out for {resource}", operation, resource)
    if isinstance(e, (EndpointConnectionError, ConnectionClosedError)):
        return Unavailable(
            f"{operation} could not reach backend for {resource}", operation, resource
        )
    if isinstance(e, BackendHTTPError):
        return normalize_http_error(e.status, e.body, operation, resource)
    if isinstance(e, OSError):
        return _from_os_error(e, operation, resource)
    if isinstance(e, BotoCoreError):
        return InternalError(f"{operation} failed for {resource}", operation, resource)
    return InternalError(
        f"{operation} failed for {resource}: {type(e).__name__}", operation, resource
    )
