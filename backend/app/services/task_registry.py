"""
任务注册表

内存中维护 订阅ID -> {定时器, 执行句柄} 的映射，是"订阅是否正在执行"的唯一依据。
不做持久化，进程启动时由 SchedulerService.restore() 重建。

每个订阅一把可重入锁，调度触发和接口操作都在该锁内完成状态变更；
字典本身只在创建/删除条目时加锁，不同订阅之间互不阻塞。
"""
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional


@dataclass
class RegistryEntry:
    subscription_id: int
    lock: threading.RLock = field(default_factory=threading.RLock)
    claimed: bool = False
    execution: Optional[Any] = None
    job_id: Optional[str] = None
    next_fire_at: Optional[datetime] = None


class TaskRegistry:
    """订阅运行时状态注册表"""

    def __init__(self):
        self._entries: Dict[int, RegistryEntry] = {}
        self._entries_lock = threading.Lock()

    def _entry(self, subscription_id: int) -> RegistryEntry:
        entry = self._entries.get(subscription_id)
        if entry is None:
            with self._entries_lock:
                entry = self._entries.setdefault(subscription_id, RegistryEntry(subscription_id))
        return entry

    @contextmanager
    def lock(self, subscription_id: int, create: bool = True) -> Iterator[Optional[RegistryEntry]]:
        """
        获取单个订阅的串行化锁

        等锁期间条目可能已被 discard()，拿到锁后确认仍是当前条目，否则换新条目重试。
        create=False 时条目不存在（订阅已删除）则不加锁，产出 None。
        """
        while True:
            entry = self._entry(subscription_id) if create else self._entries.get(subscription_id)
            if entry is None:
                yield None
                return
            with entry.lock:
                if self._entries.get(subscription_id) is entry:
                    yield entry
                    return

    def try_claim(self, subscription_id: int) -> bool:
        """原子地占用执行槽位，已被占用时返回 False"""
        with self.lock(subscription_id) as entry:
            if entry.claimed:
                return False
            entry.claimed = True
            return True

    def attach(self, subscription_id: int, execution: Any) -> None:
        with self.lock(subscription_id) as entry:
            if not entry.claimed:
                raise RuntimeError(f"Subscription {subscription_id} has no claimed slot")
            entry.execution = execution

    def release(self, subscription_id: int) -> Optional[Any]:
        """释放执行槽位，返回之前挂载的执行句柄"""
        with self.lock(subscription_id) as entry:
            execution = entry.execution
            entry.execution = None
            entry.claimed = False
            return execution

    def execution(self, subscription_id: int) -> Optional[Any]:
        entry = self._entries.get(subscription_id)
        return entry.execution if entry else None

    def is_claimed(self, subscription_id: int) -> bool:
        entry = self._entries.get(subscription_id)
        return bool(entry and entry.claimed)

    def set_timer(self, subscription_id: int, job_id: str, next_fire_at: datetime) -> None:
        with self.lock(subscription_id) as entry:
            entry.job_id = job_id
            entry.next_fire_at = next_fire_at

    def clear_timer(self, subscription_id: int) -> Optional[str]:
        """清除定时器记录，返回之前的 job id"""
        entry = self._entries.get(subscription_id)
        if entry is None:
            return None
        with entry.lock:
            job_id = entry.job_id
            entry.job_id = None
            entry.next_fire_at = None
            return job_id

    def timer(self, subscription_id: int) -> Optional[datetime]:
        """返回已登记定时器的下次触发时间，未登记时为 None"""
        entry = self._entries.get(subscription_id)
        if entry is None or entry.job_id is None:
            return None
        return entry.next_fire_at

    def discard(self, subscription_id: int) -> None:
        with self._entries_lock:
            self._entries.pop(subscription_id, None)

    def snapshot(self) -> List[Dict[str, Any]]:
        entries = list(self._entries.values())
        return [
            {
                "subscription_id": entry.subscription_id,
                "running": entry.claimed,
                "pid": getattr(entry.execution, "pid", None),
                "job_id": entry.job_id,
                "next_fire_at": entry.next_fire_at,
            }
            for entry in sorted(entries, key=lambda e: e.subscription_id)
        ]
