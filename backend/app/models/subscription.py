"""订阅模型"""
import enum
from datetime import datetime

from sqlalchemy import Column, String, Integer, DateTime, Boolean, Enum, Float, JSON, Text

from app.database import Base


class SubscriptionStatus(str, enum.Enum):
    """订阅状态枚举"""
    IDLE = "idle"
    QUEUED = "queued"
    RUNNING = "running"
    STOPPED = "stopped"
    DISABLED = "disabled"

    @classmethod
    def parse(cls, raw) -> "SubscriptionStatus":
        """
        兼容外部 runner 上报的数字状态码

        0=running, 1=idle, 2=disabled, 3=queued, 4=stopped
        """
        if isinstance(raw, cls):
            return raw
        if isinstance(raw, int) or (isinstance(raw, str) and raw.strip().isdigit()):
            code = int(raw)
            if code not in _STATUS_CODES:
                raise ValueError(f"Unknown subscription status code: {raw}")
            return _STATUS_CODES[code]
        return cls(str(raw).strip().lower())


_STATUS_CODES = {
    0: SubscriptionStatus.RUNNING,
    1: SubscriptionStatus.IDLE,
    2: SubscriptionStatus.DISABLED,
    3: SubscriptionStatus.QUEUED,
    4: SubscriptionStatus.STOPPED,
}


class Subscription(Base):
    """订阅表"""
    __tablename__ = "subscriptions"
    # SQLite 下保证删除后 id 不会被复用
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    type = Column(String(32), nullable=False)
    name = Column(String(255), nullable=True)
    alias = Column(String(255), nullable=False, index=True)

    schedule_type = Column(String(16), nullable=False, default="crontab")
    schedule = Column(String(255), nullable=True)
    interval_schedule = Column(JSON, nullable=True)

    url = Column(String(1024), nullable=False)
    branch = Column(String(255), nullable=True)
    whitelist = Column(String(1024), nullable=True)
    blacklist = Column(String(1024), nullable=True)
    dependences = Column(String(1024), nullable=True)
    extensions = Column(String(255), nullable=True)
    pull_type = Column(String(32), nullable=True)
    pull_option = Column(JSON, nullable=True)
    sub_before = Column(Text, nullable=True)
    sub_after = Column(Text, nullable=True)

    status = Column(Enum(SubscriptionStatus), default=SubscriptionStatus.IDLE, nullable=False, index=True)
    is_disabled = Column(Boolean, default=False, nullable=False)
    pid = Column(Integer, nullable=True)
    log_path = Column(String(1024), nullable=True)

    last_execution_at = Column(DateTime, nullable=True)
    last_running_time = Column(Float, nullable=True)
    last_exit_code = Column(Integer, nullable=True)
    next_run_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<Subscription id={self.id} alias={self.alias!r} status={self.status}>"
