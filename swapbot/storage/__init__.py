from .gateway import StorageGateway
from .helpers import parse_detected_asset, parse_detected_tokens_document
from .settings import StorageSettings

__all__ = [
    "StorageGateway",
    "StorageSettings",
    "parse_detected_asset",
    "parse_detected_tokens_document",
]
