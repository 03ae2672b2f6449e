"""应用配置管理，从环境变量加载配置"""
from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """应用配置类"""

    # Database
    database_url: str = "sqlite:///./data/db/subscriptions.db"

    # App Config
    debug: bool = False
    log_level: str = "INFO"
    app_log_dir: str = "logs"

    # Scheduler
    scheduler_enabled: bool = True
    scheduler_max_workers: int = 10
    misfire_grace_seconds: int = 60

    # Runner（拉取/执行脚本的外部命令）
    runner_command: str = "ql"
    repo_dir: str = "data/repo"
    log_dir: str = "data/log"
    kill_grace_seconds: float = 10.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            env_settings,
            dotenv_settings,
            init_settings,
            file_secret_settings,
        )


@lru_cache
def get_settings() -> Settings:
    """获取配置单例"""
    return Settings()
