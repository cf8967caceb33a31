from s3gateway.datatypes import CompletePart
from s3gateway.datatypes import Identity
from s3gateway.errors import GatewayError
from s3gateway.gateway import Gateway
from s3gateway.multipart import MultipartCoordinator


__all__ = [
    "CompletePart",
    "Gateway",
    "GatewayError",
    "Identity",
    "MultipartCoordinator",
]
