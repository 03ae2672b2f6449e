"""数据库模型"""
from app.models.subscription import Subscription, SubscriptionStatus

__all__ = [
    "Subscription",
    "SubscriptionStatus",
]
