# backend/config.py
import logging
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """运行配置，从环境变量（或 .env 文件）读取，例如 MAX_WORKERS=200"""

    # 存储
    database_url: str = "sqlite:///./data/keyusage.db"

    # 远程计量接口
    usage_api_url: str = "https://app.factory.ai/api/organization/members/chat-usage"
    http_timeout: float = 15.0  # 单个Key请求超时，需小于批次截止时间

    # Worker 池
    max_workers: int = 100
    queue_size: int = 10000
    submit_timeout: float = 5.0

    # 批次截止时间：base + (Key数 // worker数) * per_item，上限 max
    batch_base_timeout: float = 30.0
    batch_per_item_timeout: float = 2.0
    batch_max_timeout: float = 300.0

    # 缓存
    cache_ttl: int = 300  # 持久化缓存过期时间（秒），只是兜底
    cache_freshness: int = 300  # 判断缓存是否新鲜的窗口（秒）

    # 定时刷新，0 表示关闭
    monitor_interval: int = 0

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()


def setup_logging(level: str = "INFO"):
    """配置根日志（如果尚未配置）"""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
