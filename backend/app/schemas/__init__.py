"""API请求/响应模型"""
from app.schemas.subscription import (
    IntervalScheduleIn,
    SubscriptionCreate,
    SubscriptionUpdate,
    SubscriptionResponse,
    StatusUpdate,
    BatchResultResponse,
    LogFileResponse,
)

__all__ = [
    "IntervalScheduleIn",
    "SubscriptionCreate",
    "SubscriptionUpdate",
    "SubscriptionResponse",
    "StatusUpdate",
    "BatchResultResponse",
    "LogFileResponse",
]
