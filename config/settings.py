"""全局配置管理

所有用户可配置项均通过 .env 文件设置，运行时自动加载到此处。

使用方式：
    1. 运行 python scripts/setup_env.py 生成 .env 文件（交互式）
    2. 或手动创建 .env 文件（参考 .env.example）
"""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """应用配置 - 所有字段均可通过 .env 或环境变量覆盖"""

    # ========== 数据库 ==========
    database_url: str = "sqlite:///data/direct.db"

    # ========== 日志 ==========
    log_level: str = "INFO"

    # ========== 事件回放 ==========
    # 每次回放时从两个原始日志读取的最近条目数
    ingest_webhook_log_depth: int = 1000
    ingest_records_log_depth: int = 10000
    replay_interval_minutes: int = 30
    replay_lookback_days: int = 1
    # 调度器使用的时区（沙龙所在地）
    timezone_name: str = "Europe/Kyiv"

    # ========== 缓存 / 租约 ==========
    metrics_lease_ttl_seconds: int = 300
    avatar_cache_ttl_seconds: int = 30 * 24 * 3600

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


# 全局配置实例
settings = Settings()
