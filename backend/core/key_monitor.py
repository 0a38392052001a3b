# backend/core/key_monitor.py
import asyncio
import logging

from .key_service import APIKeyService

logger = logging.getLogger(__name__)


def refresh_once(service: APIKeyService) -> bool:
    """执行一次用量刷新（顺便预热缓存），失败只记录日志"""
    try:
        report = service.get_aggregated_report()
    except Exception as e:
        logger.error(f"Usage monitoring error: {e}")
        return False
    logger.info(f"Usage refreshed: {report.total_count} keys, "
                f"used {report.totals.total_org_total_tokens_used:.0f}/{report.totals.total_allowance:.0f}")
    return True


async def start_key_monitor(service: APIKeyService, interval_seconds: float = 300):
    """启动定时刷新循环，阻塞的汇总在线程中执行"""
    while True:
        await asyncio.to_thread(refresh_once, service)
        await asyncio.sleep(interval_seconds)
