"""
订阅存储

调度器和接口层都通过这里读写订阅记录。每次调用使用独立的短会话，
返回的对象在会话关闭后仍可读取（expire_on_commit=False）。
"""
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.models import Subscription, SubscriptionStatus
from app.services.exceptions import InfrastructureError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

# 允许通过 update() 修改的字段
UPDATABLE_FIELDS = {
    "type",
    "name",
    "alias",
    "schedule_type",
    "schedule",
    "interval_schedule",
    "url",
    "branch",
    "whitelist",
    "blacklist",
    "dependences",
    "extensions",
    "pull_type",
    "pull_option",
    "sub_before",
    "sub_after",
    "is_disabled",
    "last_execution_at",
    "last_running_time",
    "last_exit_code",
    "next_run_at",
}


class SubscriptionStore:
    """基于 SQLAlchemy 的订阅存储"""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Subscription store failure: {e}")
            raise InfrastructureError(f"Subscription store unavailable: {type(e).__name__}") from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    @staticmethod
    def _get_or_raise(db: Session, subscription_id: int) -> Subscription:
        subscription = db.get(Subscription, subscription_id)
        if subscription is None:
            raise NotFoundError(subscription_id)
        return subscription

    def list(self, search: Optional[str] = None) -> List[Subscription]:
        """列出订阅，search 按名称/别名/地址模糊匹配"""
        with self._session() as db:
            query = db.query(Subscription)
            if search:
                pattern = f"%{search.strip()}%"
                query = query.filter(
                    or_(
                        Subscription.name.ilike(pattern),
                        Subscription.alias.ilike(pattern),
                        Subscription.url.ilike(pattern),
                    )
                )
            return query.order_by(Subscription.created_at.desc(), Subscription.id.desc()).all()

    def get(self, subscription_id: int) -> Subscription:
        with self._session() as db:
            return self._get_or_raise(db, subscription_id)

    def insert(self, values: Dict[str, Any]) -> Subscription:
        unknown = set(values) - UPDATABLE_FIELDS - {"status"}
        if unknown:
            raise ValidationError(f"Unknown subscription fields: {sorted(unknown)}")

        with self._session() as db:
            subscription = Subscription(**values)
            subscription.pid = None
            db.add(subscription)
            db.flush()
            db.refresh(subscription)
            logger.debug("Inserted subscription id=%s alias=%s", subscription.id, subscription.alias)
            return subscription

    def update(self, subscription_id: int, **values: Any) -> Subscription:
        unknown = set(values) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown subscription fields: {sorted(unknown)}")

        with self._session() as db:
            subscription = self._get_or_raise(db, subscription_id)
            for key, value in values.items():
                setattr(subscription, key, value)
            db.flush()
            db.refresh(subscription)
            return subscription

    def delete(self, subscription_ids: Iterable[int]) -> int:
        ids = list(subscription_ids)
        if not ids:
            return 0
        with self._session() as db:
            count = (
                db.query(Subscription)
                .filter(Subscription.id.in_(ids))
                .delete(synchronize_session=False)
            )
            logger.debug("Deleted %s subscription(s): %s", count, ids)
            return count

    def set_status(
        self,
        subscription_id: int,
        status: SubscriptionStatus,
        pid: Optional[int] = None,
        log_path: Optional[str] = None,
    ) -> Subscription:
        """
        更新运行状态

        pid 仅在 running 状态下保留，其他状态一律清空；
        log_path 为 None 时保持原值。
        """
        status = SubscriptionStatus.parse(status)
        if status == SubscriptionStatus.RUNNING and not pid:
            raise ValidationError(f"Subscription {subscription_id}: running status requires a pid")

        with self._session() as db:
            subscription = self._get_or_raise(db, subscription_id)
            subscription.status = status
            subscription.pid = int(pid) if status == SubscriptionStatus.RUNNING else None
            if log_path is not None:
                subscription.log_path = log_path
            if status == SubscriptionStatus.RUNNING:
                subscription.last_execution_at = datetime.utcnow()
            db.flush()
            db.refresh(subscription)
            return subscription
