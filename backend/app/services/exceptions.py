"""订阅调度相关异常"""


class SubscriptionError(Exception):
    """订阅服务异常基类"""


class ValidationError(SubscriptionError):
    """参数校验失败（对外表现为 400）"""


class InvalidScheduleError(ValidationError):
    """定时规则非法，或 cron 表达式不存在未来的触发时间"""


class NotFoundError(SubscriptionError):
    """订阅不存在"""

    def __init__(self, subscription_id: int):
        super().__init__(f"Subscription {subscription_id} not found")
        self.subscription_id = subscription_id


class ConcurrencyConflict(SubscriptionError):
    """同一订阅已有执行中的任务"""

    def __init__(self, subscription_id: int):
        super().__init__(f"Subscription {subscription_id} is already running")
        self.subscription_id = subscription_id


class InfrastructureError(SubscriptionError):
    """存储不可用、进程无法启动等基础设施故障"""
