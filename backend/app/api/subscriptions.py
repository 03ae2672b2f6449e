"""订阅管理API"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Query, Request

from app.models import Subscription
from app.schemas import (
    BatchResultResponse,
    LogFileResponse,
    StatusUpdate,
    SubscriptionCreate,
    SubscriptionResponse,
    SubscriptionUpdate,
)
from app.services.scheduler_service import BatchResult, SchedulerService

router = APIRouter()
logger = logging.getLogger(__name__)

# 调度和进程控制都是阻塞调用（终止进程最多等待宽限时间），
# 路由统一使用同步函数，由 FastAPI 放到线程池执行。


def get_scheduler(request: Request) -> SchedulerService:
    return request.app.state.scheduler


def _ok(data=None) -> dict:
    return {"code": 200, "data": data}


def _dump(subscription: Subscription) -> dict:
    return SubscriptionResponse.model_validate(subscription).model_dump(mode="json")


def _dump_results(results: List[BatchResult]) -> list:
    return [BatchResultResponse(**result.to_dict()).model_dump() for result in results]


@router.get("")
def list_subscriptions(
    search_value: Optional[str] = Query(default=None, alias="searchValue"),
    scheduler: SchedulerService = Depends(get_scheduler),
):
    """订阅列表（按创建时间倒序），searchValue 按名称/别名/地址模糊匹配"""
    return _ok([_dump(sub) for sub in scheduler.list(search_value)])


@router.post("")
def create_subscription(
    data: SubscriptionCreate,
    scheduler: SchedulerService = Depends(get_scheduler),
):
    """
    创建订阅

    定时规则非法（包括永远不会触发的 cron）时返回 400，不会落库；
    未禁用的订阅创建后立即挂载定时器。
    """
    subscription = scheduler.create(data.model_dump())
    return _ok(_dump(subscription))


@router.put("")
def update_subscription(
    data: SubscriptionUpdate,
    scheduler: SchedulerService = Depends(get_scheduler),
):
    """更新订阅，未提交的字段保持不变"""
    subscription = scheduler.update(data.model_dump(exclude_unset=True))
    return _ok(_dump(subscription))


@router.delete("")
def delete_subscriptions(
    ids: List[int] = Body(...),
    scheduler: SchedulerService = Depends(get_scheduler),
):
    """删除订阅（正在执行的进程会先被终止）"""
    deleted, results = scheduler.remove(ids)
    return _ok({"deleted": deleted, "results": _dump_results(results)})


@router.put("/run")
def run_subscriptions(
    ids: List[int] = Body(...),
    scheduler: SchedulerService = Depends(get_scheduler),
):
    """立即执行，已在执行中的订阅返回 noop"""
    return _ok(_dump_results(scheduler.run(ids)))


@router.put("/stop")
def stop_subscriptions(
    ids: List[int] = Body(...),
    scheduler: SchedulerService = Depends(get_scheduler),
):
    """终止执行并取消定时器"""
    return _ok(_dump_results(scheduler.stop(ids)))


@router.put("/disable")
def disable_subscriptions(
    ids: List[int] = Body(...),
    scheduler: SchedulerService = Depends(get_scheduler),
):
    """禁用订阅"""
    return _ok(_dump_results(scheduler.disable(ids)))


@router.put("/enable")
def enable_subscriptions(
    ids: List[int] = Body(...),
    scheduler: SchedulerService = Depends(get_scheduler),
):
    """启用订阅"""
    return _ok(_dump_results(scheduler.enable(ids)))


@router.put("/status")
def update_status(
    data: StatusUpdate,
    scheduler: SchedulerService = Depends(get_scheduler),
):
    """外部 runner 上报执行状态"""
    results = scheduler.set_status(data.ids, data.status, pid=data.pid, log_path=data.log_path)
    return _ok(_dump_results(results))


@router.get("/scheduler/jobs")
def list_scheduler_jobs(scheduler: SchedulerService = Depends(get_scheduler)):
    """已挂载的定时器和执行中的任务（调试用）"""
    return _ok(scheduler.jobs())


@router.get("/{subscription_id}")
def get_subscription(
    subscription_id: int,
    scheduler: SchedulerService = Depends(get_scheduler),
):
    """获取订阅详情"""
    return _ok(_dump(scheduler.get(subscription_id)))


@router.get("/{subscription_id}/log")
def get_subscription_log(
    subscription_id: int,
    lines: Optional[int] = Query(default=None, ge=1, description="只返回最后 N 行"),
    scheduler: SchedulerService = Depends(get_scheduler),
):
    """最近一次执行的日志"""
    return _ok(scheduler.log(subscription_id, lines))


@router.get("/{subscription_id}/logs")
def list_subscription_logs(
    subscription_id: int,
    scheduler: SchedulerService = Depends(get_scheduler),
):
    """历史日志文件列表"""
    logs = scheduler.logs(subscription_id)
    return _ok([LogFileResponse(**item).model_dump(mode="json") for item in logs])
