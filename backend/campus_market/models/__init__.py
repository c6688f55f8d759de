from campus_market.models.user import User
from campus_market.models.product import Product
from campus_market.models.wallet import Wallet, Transaction
from campus_market.models.negotiation import Negotiation
from campus_market.models.order import Order, OrderStatusHistory, OrderOutboxEvent
from campus_market.models.payment import GatewayPayment, GatewayTransfer
from campus_market.models.notification import Notification
from campus_market.models.platform_event import PlatformEvent
from campus_market.models.webhook_event import WebhookEvent

__all__ = [
    "User",
    "Product",
    "Wallet",
    "Transaction",
    "Negotiation",
    "Order",
    "OrderStatusHistory",
    "OrderOutboxEvent",
    "GatewayPayment",
    "GatewayTransfer",
    "Notification",
    "PlatformEvent",
    "WebhookEvent",
]
