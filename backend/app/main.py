"""FastAPI应用入口"""
import logging
import os
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api import subscriptions
from app.config import Settings, get_settings
from app.database import build_engine, build_session_factory, create_tables
from app.services.exceptions import (
    ConcurrencyConflict,
    InfrastructureError,
    NotFoundError,
    ValidationError,
)
from app.services.process_runner import ProcessRunner
from app.services.scheduler_service import SchedulerService
from app.services.subscription_store import SubscriptionStore
from app.services.task_registry import TaskRegistry

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


# 配置日志
def setup_logging(settings: Settings):
    log_dir = settings.app_log_dir
    if not os.path.exists(log_dir):
        os.makedirs(log_dir)

    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    formatter = logging.Formatter(log_format)

    # 1. 控制台处理器
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    # 2. 文件轮转处理器 (10MB * 5 backups)
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, "app.log"),
        maxBytes=10*1024*1024,
        backupCount=5,
        encoding="utf-8"
    )
    file_handler.setFormatter(formatter)

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        handlers=[console_handler, file_handler]
    )


def build_scheduler(settings: Settings) -> SchedulerService:
    """按配置组装存储、执行器、注册表和调度服务"""
    engine = build_engine(settings.database_url)
    create_tables(engine)
    store = SubscriptionStore(build_session_factory(engine))
    runner = ProcessRunner(
        log_dir=settings.log_dir,
        work_dir=settings.repo_dir,
        command=settings.runner_command,
        kill_grace_seconds=settings.kill_grace_seconds,
    )
    return SchedulerService(
        store,
        runner,
        TaskRegistry(),
        max_workers=settings.scheduler_max_workers,
        kill_grace_seconds=settings.kill_grace_seconds,
        misfire_grace_seconds=settings.misfire_grace_seconds,
    )


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"code": status_code, "message": message})


def register_exception_handlers(app: FastAPI):
    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return _error(400, str(exc))

    @app.exception_handler(RequestValidationError)
    async def request_validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = "; ".join(
            f"param {'.'.join(str(p) for p in err.get('loc', ())[1:]) or 'body'} error: {err.get('msg')}"
            for err in errors
        )
        return _error(400, message or "invalid request")

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return _error(404, str(exc))

    @app.exception_handler(ConcurrencyConflict)
    async def conflict_handler(request: Request, exc: ConcurrencyConflict):
        return _error(409, str(exc))

    @app.exception_handler(InfrastructureError)
    async def infrastructure_error_handler(request: Request, exc: InfrastructureError):
        logger.exception(f"Infrastructure failure on {request.method} {request.url.path}", exc_info=exc)
        return _error(500, str(exc))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}", exc_info=exc)
        return _error(500, "internal server error")


def create_app(settings: Optional[Settings] = None, scheduler: Optional[SchedulerService] = None) -> FastAPI:
    """
    创建应用

    Args:
        settings: 配置，默认读取环境变量
        scheduler: 已组装好的调度服务（测试时注入），默认按配置组装
    """
    settings = settings or get_settings()
    setup_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        应用生命周期管理

        启动时：
        1. 组装调度服务（未注入时）
        2. 启动 APScheduler，重置孤儿记录并恢复所有定时器

        关闭时：
        1. 关闭 APScheduler
        """
        # ========== 启动逻辑 ==========
        logger.info("Starting application...")

        service = scheduler or build_scheduler(settings)
        app.state.scheduler = service

        if settings.scheduler_enabled:
            service.start()
        else:
            # 定时器不会触发，但仍按存储重置孤儿记录，手动执行可用
            logger.info("Scheduler disabled by config; timers will not fire")
            service.restore()

        logger.info("Application startup complete")

        yield  # 应用运行中

        # ========== 关闭逻辑 ==========
        logger.info("Shutting down application...")
        service.shutdown(wait=True)
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="订阅调度服务",
        description="订阅定时拉取与脚本执行API",
        version=VERSION,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        lifespan=lifespan,
    )

    # CORS配置
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,  # 使用 * 时必须为 False
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    @app.get("/health")
    def health_check(request: Request):
        """健康检查接口"""
        service: SchedulerService = request.app.state.scheduler
        return {
            "status": "healthy",
            "version": VERSION,
            "scheduler": {
                "scheduler_enabled": settings.scheduler_enabled,
                **service.get_status(),
            },
        }

    # 注册路由
    app.include_router(subscriptions.router, prefix="/api/subscriptions", tags=["订阅管理"])
    return app


def run():
    """命令行入口"""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "app.main:create_app",
        factory=True,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=settings.debug,
    )
