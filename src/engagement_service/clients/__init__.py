"""HTTP clients for external collaborators."""

from engagement_service.clients.notification_client import NotificationClient
from engagement_service.clients.payment_gateway_client import PaymentGatewayClient

__all__ = ["NotificationClient", "PaymentGatewayClient"]
