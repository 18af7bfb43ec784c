"""Outbound delivery: transport, credentials, delivery log and resend job."""

from . import schemas
from .credentials import CredentialResolver
from .repository import (
    DeliveryLogRepository,
    InMemoryDeliveryLogRepository,
    SqlDeliveryLogRepository,
)
from .service import DeliveryCoordinator, normalize_recipient
from .transport import HttpTransport, MessageTransport

__all__ = [
    "CredentialResolver",
    "DeliveryCoordinator",
    "DeliveryLogRepository",
    "HttpTransport",
    "InMemoryDeliveryLogRepository",
    "MessageTransport",
    "SqlDeliveryLogRepository",
    "normalize_recipient",
    "schemas",
]
