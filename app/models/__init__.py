from app.models.product import Product
from app.models.subscription import Subscription, SubscriptionStatus, SubscriptionType
from app.models.price_change import (ApplicationType, ApprovalMethod, CancellationReason,
                                     ClientApprovalStatus, PriceChangeStatus, PriceChangeType,
                                     SubscriptionPriceChange)
from app.models.product_price_change import ProductPriceChange
from app.models.notification_log import NotificationLog

__all__ = [
    "Product", "Subscription", "SubscriptionStatus", "SubscriptionType",
    "SubscriptionPriceChange", "PriceChangeStatus", "ClientApprovalStatus", "ApplicationType",
    "PriceChangeType", "ApprovalMethod", "CancellationReason", "ProductPriceChange", "NotificationLog",
]
