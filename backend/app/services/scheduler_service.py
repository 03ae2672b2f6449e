"""APScheduler 调度服务"""
import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler

from app.models import Subscription, SubscriptionStatus
from app.services.exceptions import (
    ConcurrencyConflict,
    NotFoundError,
    ValidationError,
)
from app.services.process_runner import ExecutionHandle, ExecutionResult, ProcessRunner
from app.services.schedule_parser import (
    Schedule,
    describe,
    next_fire_after,
    parse_schedule_fields,
    schedule_to_fields,
)
from app.services.subscription_store import SubscriptionStore
from app.services.task_registry import TaskRegistry

logger = logging.getLogger(__name__)

JOB_ID_PREFIX = "subscription_"


class BatchOutcome(str, enum.Enum):
    """批量操作中单个订阅的处理结果"""
    OK = "ok"
    NOOP = "noop"
    NOT_FOUND = "not_found"
    INVALID = "invalid"


@dataclass
class BatchResult:
    id: int
    outcome: BatchOutcome
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome in (BatchOutcome.OK, BatchOutcome.NOOP)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "outcome": self.outcome.value, "message": self.message}


def _job_id(subscription_id: int) -> str:
    return f"{JOB_ID_PREFIX}{subscription_id}"


class SchedulerService:
    """
    订阅调度服务

    负责订阅的定时触发与执行控制：
    - 每个启用的订阅对应一个一次性的 date 任务，执行结束后按结束时间重新计算并挂载
    - 同一订阅同时最多只有一个执行（注册表原子占位）
    - 运行/停止/启用/禁用/删除与定时触发共用同一把订阅锁，状态变更全序
    - 不同订阅之间完全并行

    依赖全部通过构造函数传入，不使用全局单例。
    """

    def __init__(
        self,
        store: SubscriptionStore,
        runner: ProcessRunner,
        registry: Optional[TaskRegistry] = None,
        *,
        max_workers: int = 10,
        kill_grace_seconds: float = 10.0,
        misfire_grace_seconds: int = 60,
        clock: Optional[Callable[[], datetime]] = None,
        timezone: str = "UTC",
    ):
        self.store = store
        self.runner = runner
        self.registry = registry or TaskRegistry()
        self.kill_grace_seconds = kill_grace_seconds
        self._clock = clock or datetime.utcnow

        # 任务默认配置
        job_defaults = {
            'coalesce': True,                          # 错过的触发合并为一次
            'max_instances': 1,
            'misfire_grace_time': misfire_grace_seconds,
        }
        self._scheduler = BackgroundScheduler(
            executors={'default': ThreadPoolExecutor(max_workers)},
            job_defaults=job_defaults,
            timezone=timezone,
        )
        self._setup_event_listeners()

    # ==================== 生命周期 ====================

    def _setup_event_listeners(self):
        def job_missed_listener(event):
            subscription_id = self._subscription_id_from_job(event.job_id)
            if subscription_id is None:
                return
            logger.warning(f"Job '{event.job_id}' missed scheduled run time, re-arming")
            self._rearm_quietly(subscription_id)

        def job_error_listener(event):
            logger.error(f"Job '{event.job_id}' raised exception: {event.exception}")

        self._scheduler.add_listener(job_missed_listener, EVENT_JOB_MISSED)
        self._scheduler.add_listener(job_error_listener, EVENT_JOB_ERROR)

    @staticmethod
    def _subscription_id_from_job(job_id: str) -> Optional[int]:
        if not job_id.startswith(JOB_ID_PREFIX):
            return None
        try:
            return int(job_id[len(JOB_ID_PREFIX):])
        except ValueError:
            return None

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> Dict[str, int]:
        """启动调度器并从存储恢复所有定时任务"""
        if self._scheduler.running:
            logger.warning("Scheduler already started")
            return {}
        self._scheduler.start()
        logger.info("APScheduler started")
        return self.restore()

    def shutdown(self, wait: bool = True):
        """关闭调度器（不终止正在执行的子进程，下次启动时按孤儿记录处理）"""
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("APScheduler shut down")

    def restore(self) -> Dict[str, int]:
        """
        重建注册表

        - 上个进程遗留的 running/queued 记录视为孤儿，重置为 idle（已禁用则为 disabled）
        - 所有未禁用的订阅重新挂载定时任务（包括 stopped，定时触发后恢复正常调度）
        """
        counts = {"total": 0, "armed": 0, "orphaned": 0, "invalid": 0}
        now = self._clock()

        for subscription in self.store.list():
            counts["total"] += 1
            subscription_id = subscription.id
            with self.registry.lock(subscription_id):
                status = subscription.status
                if status in (SubscriptionStatus.RUNNING, SubscriptionStatus.QUEUED) \
                        and not self.registry.is_claimed(subscription_id):
                    logger.warning(
                        f"Subscription {subscription_id} was left {status.value} "
                        f"(pid={subscription.pid}) by a previous process; resetting"
                    )
                    status = self._resting_status(subscription)
                    self.store.set_status(subscription_id, status)
                    counts["orphaned"] += 1
                elif subscription.is_disabled and status != SubscriptionStatus.DISABLED:
                    status = SubscriptionStatus.DISABLED
                    self.store.set_status(subscription_id, status)

                if subscription.is_disabled:
                    continue

                try:
                    self._arm(subscription_id, self._resolve_schedule(subscription), now)
                    counts["armed"] += 1
                except ValidationError as e:
                    counts["invalid"] += 1
                    logger.warning(f"Subscription {subscription_id} not armed: {e}")

        logger.info(
            "Restored %s/%s subscription timers (orphaned=%s, invalid=%s)",
            counts["armed"],
            counts["total"],
            counts["orphaned"],
            counts["invalid"],
        )
        return counts

    # ==================== 定时器 ====================

    def _resolve_schedule(self, subscription: Subscription) -> Schedule:
        return parse_schedule_fields(
            subscription.schedule_type,
            subscription.schedule,
            subscription.interval_schedule,
            now=self._clock(),
        )

    def _arm(self, subscription_id: int, schedule: Schedule, base: datetime) -> datetime:
        """挂载（或替换）订阅的定时任务，调用方需持有订阅锁"""
        self._disarm(subscription_id, persist=False)
        next_fire = next_fire_after(schedule, base)
        job_id = _job_id(subscription_id)
        self._scheduler.add_job(
            func=self.fire,
            trigger="date",
            run_date=next_fire,
            id=job_id,
            args=[subscription_id],
            replace_existing=True,
            name=f"Subscription task for {subscription_id}",
        )
        self.registry.set_timer(subscription_id, job_id, next_fire)
        self.store.update(subscription_id, next_run_at=next_fire)
        logger.debug("Armed %s: %s, next fire at %s", job_id, describe(schedule), next_fire)
        return next_fire

    def _disarm(self, subscription_id: int, persist: bool = True) -> None:
        job_id = self.registry.clear_timer(subscription_id)
        if job_id:
            try:
                self._scheduler.remove_job(job_id)
            except JobLookupError:
                pass
        if persist:
            self.store.update(subscription_id, next_run_at=None)

    def _rearm_quietly(self, subscription_id: int) -> None:
        with self.registry.lock(subscription_id):
            try:
                subscription = self.store.get(subscription_id)
                if subscription.is_disabled or self.registry.is_claimed(subscription_id):
                    return
                self._arm(subscription_id, self._resolve_schedule(subscription), self._clock())
            except NotFoundError:
                self.registry.discard(subscription_id)
            except Exception:
                logger.exception(f"Failed to re-arm subscription {subscription_id}")

    # ==================== 执行 ====================

    @staticmethod
    def _resting_status(subscription: Subscription) -> SubscriptionStatus:
        if subscription.is_disabled:
            return SubscriptionStatus.DISABLED
        if subscription.status == SubscriptionStatus.STOPPED:
            return SubscriptionStatus.STOPPED
        return SubscriptionStatus.IDLE

    def fire(self, subscription_id: int) -> None:
        """
        APScheduler 触发的任务函数

        已有执行在进行时跳过本次触发（由执行结束后重新挂载定时器）。
        """
        logger.info(f"Triggering subscription task: {subscription_id}")
        try:
            self._launch(subscription_id, scheduled=True)
        except ConcurrencyConflict:
            logger.warning(f"Subscription {subscription_id}: previous run still in progress, skipping")
        except NotFoundError:
            logger.warning(f"Subscription not found: {subscription_id}")
            self.registry.discard(subscription_id)
        except Exception:
            logger.exception(f"Error triggering subscription task {subscription_id}")
            self._rearm_quietly(subscription_id)

    def _launch(self, subscription_id: int, scheduled: bool) -> Optional[ExecutionHandle]:
        with self.registry.lock(subscription_id):
            subscription = self.store.get(subscription_id)
            if scheduled:
                # 一次性任务已被消费
                self.registry.clear_timer(subscription_id)
                if subscription.is_disabled:
                    logger.info(f"Subscription is disabled: {subscription_id}")
                    return None

            # running 但未占位：外部 runner 上报的执行尚未结束
            if subscription.status == SubscriptionStatus.RUNNING or not self.registry.try_claim(subscription_id):
                raise ConcurrencyConflict(subscription_id)

            try:
                self.store.set_status(subscription_id, SubscriptionStatus.QUEUED)
                handle = self.runner.execute(subscription, on_complete=self._on_complete)
            except Exception:
                self.registry.release(subscription_id)
                try:
                    self.store.set_status(subscription_id, self._resting_status(subscription))
                except Exception:
                    logger.exception(f"Failed to reset status of subscription {subscription_id}")
                raise

            self.registry.attach(subscription_id, handle)
            self.store.set_status(
                subscription_id,
                SubscriptionStatus.RUNNING,
                pid=handle.pid,
                log_path=handle.log_path,
            )
            logger.info(
                f"Subscription {subscription_id} running "
                f"({'scheduled' if scheduled else 'manual'}), pid={handle.pid}"
            )
            return handle

    def _on_complete(self, handle: ExecutionHandle, result: ExecutionResult) -> None:
        """执行结束回调（在执行器的监视线程中调用）"""
        subscription_id = handle.subscription_id
        # _launch 持有订阅锁直到句柄挂载完成，必须在锁内比对句柄
        with self.registry.lock(subscription_id, create=False) as entry:
            if entry is None:
                # 订阅已删除
                return
            if entry.execution is not handle:
                # 已被 stop 接管，只补记被终止进程的退出码
                if handle.killed:
                    self._record_exit(subscription_id, result)
                return
            self.registry.release(subscription_id)

            try:
                subscription = self.store.update(
                    subscription_id,
                    last_exit_code=result.exit_code,
                    last_running_time=result.duration_seconds,
                )
            except NotFoundError:
                self.registry.discard(subscription_id)
                return

            if result.exit_code != 0:
                logger.warning(
                    f"Subscription {subscription_id} execution failed with exit code {result.exit_code}"
                )

            if subscription.is_disabled:
                self.store.set_status(subscription_id, SubscriptionStatus.DISABLED)
                return

            self.store.set_status(subscription_id, SubscriptionStatus.IDLE)
            try:
                self._arm(subscription_id, self._resolve_schedule(subscription), self._clock())
            except ValidationError as e:
                logger.warning(f"Subscription {subscription_id} not re-armed: {e}")

    def _record_exit(self, subscription_id: int, result: ExecutionResult) -> None:
        try:
            self.store.update(
                subscription_id,
                last_exit_code=result.exit_code,
                last_running_time=result.duration_seconds,
            )
        except NotFoundError:
            pass

    # ==================== 批量操作 ====================

    def _apply(self, ids: Iterable[int], operation: Callable[[int], BatchOutcome]) -> List[BatchResult]:
        """逐个处理，单个订阅的失败只记录在结果里，不中断整个批次"""
        results: List[BatchResult] = []
        for subscription_id in ids:
            try:
                outcome = operation(subscription_id)
                results.append(BatchResult(subscription_id, outcome))
            except NotFoundError as e:
                self.registry.discard(subscription_id)
                results.append(BatchResult(subscription_id, BatchOutcome.NOT_FOUND, str(e)))
            except ConcurrencyConflict as e:
                logger.info(str(e))
                results.append(BatchResult(subscription_id, BatchOutcome.NOOP, str(e)))
            except ValidationError as e:
                results.append(BatchResult(subscription_id, BatchOutcome.INVALID, str(e)))
        return results

    def run(self, ids: Iterable[int]) -> List[BatchResult]:
        """立即执行（绕过定时器）"""
        return self._apply(ids, self._run_one)

    def _run_one(self, subscription_id: int) -> BatchOutcome:
        self._launch(subscription_id, scheduled=False)
        return BatchOutcome.OK

    def stop(self, ids: Iterable[int]) -> List[BatchResult]:
        """终止执行，停止后不再挂载定时器，直到再次运行或启用"""
        return self._apply(ids, self._stop_one)

    def _stop_one(self, subscription_id: int) -> BatchOutcome:
        with self.registry.lock(subscription_id):
            subscription = self.store.get(subscription_id)
            final_status = (
                SubscriptionStatus.DISABLED if subscription.is_disabled else SubscriptionStatus.STOPPED
            )
            self._disarm(subscription_id)

            handle = self.registry.execution(subscription_id)
            if handle is not None:
                # 只发送 SIGTERM，SIGKILL 升级和退出码补记都在锁外完成
                self.runner.kill(handle, self.kill_grace_seconds)
                self.registry.release(subscription_id)
                values: Dict[str, Any] = {"last_running_time": round(handle.elapsed, 2)}
                if handle.process.returncode is not None:
                    values["last_exit_code"] = handle.process.returncode
                self.store.update(subscription_id, **values)
            elif subscription.status == SubscriptionStatus.RUNNING and subscription.pid:
                # 外部上报的执行，没有句柄，只能按 pid 终止
                self.runner.kill_pid(subscription.pid, self.kill_grace_seconds)
            elif subscription.status == final_status:
                return BatchOutcome.NOOP

            self.store.set_status(subscription_id, final_status)
            logger.info(f"Stopped subscription {subscription_id} -> {final_status.value}")
            return BatchOutcome.OK

    def disable(self, ids: Iterable[int]) -> List[BatchResult]:
        """禁用：取消定时器，正在执行的任务允许跑完但不再挂载"""
        return self._apply(ids, self._disable_one)

    def _disable_one(self, subscription_id: int) -> BatchOutcome:
        with self.registry.lock(subscription_id):
            subscription = self.store.get(subscription_id)
            self._disarm(subscription_id)
            if subscription.is_disabled and subscription.status == SubscriptionStatus.DISABLED:
                return BatchOutcome.NOOP

            self.store.update(subscription_id, is_disabled=True)
            in_flight = (
                self.registry.is_claimed(subscription_id)
                or subscription.status == SubscriptionStatus.RUNNING
            )
            if not in_flight:
                self.store.set_status(subscription_id, SubscriptionStatus.DISABLED)
            logger.info(f"Disabled subscription {subscription_id}")
            return BatchOutcome.OK

    def enable(self, ids: Iterable[int]) -> List[BatchResult]:
        """启用：重新计算下次触发时间并挂载定时器"""
        return self._apply(ids, self._enable_one)

    def _enable_one(self, subscription_id: int) -> BatchOutcome:
        with self.registry.lock(subscription_id):
            subscription = self.store.get(subscription_id)
            schedule = self._resolve_schedule(subscription)

            self.store.update(subscription_id, is_disabled=False)
            in_flight = (
                self.registry.is_claimed(subscription_id)
                or subscription.status == SubscriptionStatus.RUNNING
            )
            if not in_flight:
                self.store.set_status(subscription_id, SubscriptionStatus.IDLE)
                self._arm(subscription_id, schedule, self._clock())
            logger.info(f"Enabled subscription {subscription_id}")
            return BatchOutcome.OK

    def remove(self, ids: Iterable[int]) -> Tuple[int, List[BatchResult]]:
        """删除订阅，正在执行的进程先终止（SIGTERM，超时后 SIGKILL）"""
        deleted = 0

        def remove_one(subscription_id: int) -> BatchOutcome:
            nonlocal deleted
            with self.registry.lock(subscription_id):
                subscription = self.store.get(subscription_id)
                self._disarm(subscription_id, persist=False)

                handle = self.registry.execution(subscription_id)
                if handle is not None:
                    self.runner.kill(handle, self.kill_grace_seconds)
                elif subscription.status == SubscriptionStatus.RUNNING and subscription.pid:
                    self.runner.kill_pid(subscription.pid, self.kill_grace_seconds)
                self.registry.release(subscription_id)

                deleted += self.store.delete([subscription_id])
                self.registry.discard(subscription_id)
                logger.info(f"Removed subscription {subscription_id}")
                return BatchOutcome.OK

        results = self._apply(ids, remove_one)
        return deleted, results

    def set_status(
        self,
        ids: Iterable[int],
        status: Any,
        pid: Optional[int] = None,
        log_path: Optional[str] = None,
    ) -> List[BatchResult]:
        """外部 runner 上报的状态"""
        try:
            parsed = SubscriptionStatus.parse(status)
        except ValueError as e:
            raise ValidationError(f"param status error: {e}")

        def set_one(subscription_id: int) -> BatchOutcome:
            with self.registry.lock(subscription_id):
                subscription = self.store.get(subscription_id)
                effective = parsed
                if effective == SubscriptionStatus.IDLE and subscription.is_disabled:
                    effective = SubscriptionStatus.DISABLED
                if effective == SubscriptionStatus.DISABLED:
                    self._disarm(subscription_id)
                    self.store.update(subscription_id, is_disabled=True)
                subscription = self.store.set_status(subscription_id, effective, pid=pid, log_path=log_path)

                # 外部执行结束后补挂定时器
                if effective == SubscriptionStatus.IDLE and self.registry.timer(subscription_id) is None \
                        and not self.registry.is_claimed(subscription_id):
                    try:
                        self._arm(subscription_id, self._resolve_schedule(subscription), self._clock())
                    except ValidationError as e:
                        logger.warning(f"Subscription {subscription_id} not re-armed: {e}")
                return BatchOutcome.OK

        return self._apply(ids, set_one)

    # ==================== 增改查 ====================

    def _schedule_values(self, values: Dict[str, Any], partial: bool) -> Dict[str, Any]:
        keys = ("schedule_type", "schedule", "interval_schedule")
        if partial and not any(values.get(k) is not None for k in keys):
            for k in keys:
                values.pop(k, None)
            return {}

        schedule = parse_schedule_fields(
            values.pop("schedule_type", None),
            values.pop("schedule", None),
            values.pop("interval_schedule", None),
            now=self._clock(),
        )
        schedule_type, cron, interval = schedule_to_fields(schedule)
        return {"schedule_type": schedule_type, "schedule": cron, "interval_schedule": interval}

    def create(self, values: Dict[str, Any]) -> Subscription:
        """
        创建订阅

        定时规则非法（包括 cron 永远不会触发）时抛出 ValidationError，不落库。
        """
        values = {k: v for k, v in values.items() if k not in ("id", "pid", "log_path")}
        if not values.get("alias"):
            raise ValidationError("param alias error: required")

        status = values.pop("status", None)
        disabled = bool(values.pop("is_disabled", False))
        if status is not None:
            try:
                disabled = disabled or SubscriptionStatus.parse(status) == SubscriptionStatus.DISABLED
            except ValueError as e:
                raise ValidationError(f"param status error: {e}")

        values.update(self._schedule_values(values, partial=False))
        values["is_disabled"] = disabled
        values["status"] = SubscriptionStatus.DISABLED if disabled else SubscriptionStatus.IDLE

        subscription = self.store.insert(values)
        if not disabled:
            with self.registry.lock(subscription.id):
                schedule = self._resolve_schedule(subscription)
                self._arm(subscription.id, schedule, self._clock())
        logger.info(f"Created subscription {subscription.id} ({subscription.alias})")
        return self.store.get(subscription.id)

    def update(self, values: Dict[str, Any]) -> Subscription:
        """更新订阅，定时规则可选；规则变更后重新挂载定时器"""
        values = dict(values)
        subscription_id = values.pop("id", None)
        if subscription_id is None:
            raise ValidationError("param id error: required")
        for key in ("status", "is_disabled", "pid", "log_path"):
            values.pop(key, None)
        # 非空列只能改值，不能置空
        for key in ("alias", "type", "url"):
            if key in values and not values[key]:
                raise ValidationError(f"param {key} error: required")

        with self.registry.lock(subscription_id):
            self.store.get(subscription_id)
            schedule_values = self._schedule_values(values, partial=True)
            values.update(schedule_values)
            subscription = self.store.update(subscription_id, **values)

            # 执行中的订阅在结束时按新规则挂载
            running = (
                self.registry.is_claimed(subscription_id)
                or subscription.status in (SubscriptionStatus.RUNNING, SubscriptionStatus.QUEUED)
            )
            if schedule_values and not subscription.is_disabled and not running:
                self._arm(subscription_id, self._resolve_schedule(subscription), self._clock())
                logger.info(f"Re-armed subscription {subscription_id} after schedule change")
            return self.store.get(subscription_id)

    def get(self, subscription_id: int) -> Subscription:
        return self.store.get(subscription_id)

    def list(self, search: Optional[str] = None) -> List[Subscription]:
        return self.store.list(search)

    def log(self, subscription_id: int, lines: Optional[int] = None) -> str:
        """最近一次执行的日志全文，或最后 lines 行"""
        subscription = self.store.get(subscription_id)
        return self.runner.read_log(subscription.log_path, lines)

    def logs(self, subscription_id: int) -> List[Dict[str, Any]]:
        """订阅的历史日志列表"""
        subscription = self.store.get(subscription_id)
        return self.runner.list_logs(subscription.alias)

    # ==================== 状态查询 ====================

    def next_fire_time(self, subscription_id: int) -> Optional[datetime]:
        return self.registry.timer(subscription_id)

    def jobs(self) -> List[Dict[str, Any]]:
        """已挂载的定时器和执行中的任务（调试用）"""
        return self.registry.snapshot()

    def get_status(self) -> dict:
        """获取调度器状态"""
        snapshot = self.registry.snapshot()
        return {
            "running": self._scheduler.running,
            "job_count": sum(1 for item in snapshot if item["job_id"]),
            "execution_count": sum(1 for item in snapshot if item["running"]),
        }
