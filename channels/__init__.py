"""Outbound delivery clients and the delivery error taxonomy."""
from channels.base import (
    DeliveryError,
    RetryableDeliveryError,
    FatalDeliveryError,
    CredentialExpiredError,
    CredentialsMissingError,
    is_fatal,
    DeliveryCredentials,
    CredentialProvider,
    StoreCredentialProvider,
    DeliveryClient,
    OutboundSender,
)
from channels.instagram_client import InstagramDeliveryClient, classify_graph_error

__all__ = [
    "DeliveryError", "RetryableDeliveryError", "FatalDeliveryError",
    "CredentialExpiredError", "CredentialsMissingError", "is_fatal",
    "DeliveryCredentials", "CredentialProvider", "StoreCredentialProvider",
    "DeliveryClient", "OutboundSender",
    "InstagramDeliveryClient", "classify_graph_error",
]
