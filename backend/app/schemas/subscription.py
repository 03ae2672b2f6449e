"""订阅相关的请求/响应模型"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from app.models import SubscriptionStatus


class IntervalScheduleIn(BaseModel):
    """间隔规则"""
    value: int = Field(..., gt=0, description="间隔数值")
    type: str = Field(..., pattern="^(seconds|minutes|hours|days)$", description="间隔单位")


class SubscriptionCreate(BaseModel):
    """创建订阅请求"""
    name: Optional[str] = Field(None, max_length=255)
    alias: str = Field(..., min_length=1, max_length=255, description="唯一别名，同时作为日志目录名")
    type: str = Field(default="public-repo", description="订阅类型：public-repo / private-repo / file")
    url: str = Field(..., min_length=1, description="仓库或文件地址")
    branch: Optional[str] = None
    whitelist: Optional[str] = None
    blacklist: Optional[str] = None
    dependences: Optional[str] = None
    extensions: Optional[str] = None
    schedule_type: Optional[str] = Field(None, pattern="^(crontab|interval)$", description="缺省时按 schedule / interval_schedule 推断")
    schedule: Optional[str] = Field(None, description="cron 表达式（5 段，或 6 段且首段为秒）")
    interval_schedule: Optional[IntervalScheduleIn] = None
    pull_type: Optional[str] = Field(None, pattern="^(ssh-key|user-pwd)$")
    pull_option: Optional[Dict[str, Any]] = None
    sub_before: Optional[str] = None
    sub_after: Optional[str] = None
    is_disabled: bool = False

    class Config:
        json_schema_extra = {
            "example": {
                "name": "Example scripts",
                "alias": "example_scripts",
                "type": "public-repo",
                "url": "https://github.com/example/scripts.git",
                "branch": "main",
                "whitelist": "task_",
                "schedule_type": "crontab",
                "schedule": "0 */6 * * *",
            }
        }


class SubscriptionUpdate(BaseModel):
    """更新订阅请求，未提供的字段保持不变"""
    id: int
    name: Optional[str] = Field(None, max_length=255)
    alias: Optional[str] = Field(None, min_length=1, max_length=255)
    type: Optional[str] = None
    url: Optional[str] = None
    branch: Optional[str] = None
    whitelist: Optional[str] = None
    blacklist: Optional[str] = None
    dependences: Optional[str] = None
    extensions: Optional[str] = None
    schedule_type: Optional[str] = Field(None, pattern="^(crontab|interval)$")
    schedule: Optional[str] = None
    interval_schedule: Optional[IntervalScheduleIn] = None
    pull_type: Optional[str] = Field(None, pattern="^(ssh-key|user-pwd)$")
    pull_option: Optional[Dict[str, Any]] = None
    sub_before: Optional[str] = None
    sub_after: Optional[str] = None


class StatusUpdate(BaseModel):
    """外部 runner 上报的状态"""
    ids: List[int] = Field(..., min_length=1)
    status: Union[int, str] = Field(..., description="状态名或数字编码")
    pid: Optional[int] = None
    log_path: Optional[str] = None


class SubscriptionResponse(BaseModel):
    """订阅响应"""
    id: int
    name: Optional[str]
    alias: str
    type: Optional[str]
    url: Optional[str]
    branch: Optional[str]
    whitelist: Optional[str]
    blacklist: Optional[str]
    dependences: Optional[str]
    extensions: Optional[str]
    schedule_type: str
    schedule: Optional[str]
    interval_schedule: Optional[Dict[str, Any]]
    pull_type: Optional[str]
    sub_before: Optional[str]
    sub_after: Optional[str]
    status: SubscriptionStatus
    is_disabled: bool
    pid: Optional[int]
    log_path: Optional[str]
    last_execution_at: Optional[datetime]
    last_running_time: Optional[float]
    last_exit_code: Optional[int]
    next_run_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class BatchResultResponse(BaseModel):
    """批量操作中单个订阅的结果"""
    id: int
    outcome: str
    message: Optional[str] = None


class LogFileResponse(BaseModel):
    """历史日志文件"""
    filename: str
    path: str
    size: int
    modified_at: datetime

