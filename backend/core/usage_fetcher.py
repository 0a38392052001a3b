# backend/core/usage_fetcher.py
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests
from requests.adapters import HTTPAdapter

from ..models.schemas import UsageRecord
from .errors import DecodeError, RemoteStatusError, TransportError

logger = logging.getLogger(__name__)

USAGE_URL = "https://app.factory.ai/api/organization/members/chat-usage"
USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
NOT_APPLICABLE = "N/A"


def mask_key(key: str) -> str:
    """只显示前4位和后4位；长度不超过8的Key原样返回"""
    if len(key) <= 8:
        return key
    return f"{key[:4]}...{key[-4:]}"


def format_date(timestamp_ms: int) -> str:
    """毫秒时间戳转 YYYY-MM-DD（UTC），0 表示不适用"""
    if not timestamp_ms:
        return NOT_APPLICABLE
    return datetime.fromtimestamp(timestamp_ms // 1000, tz=timezone.utc).strftime("%Y-%m-%d")


class UsageFetcher:
    """调用远程计量接口查询单个Key的用量，所有 worker 共享同一个 Session"""

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = 15.0,
                 url: str = USAGE_URL, pool_maxsize: int = 100):
        self.url = url
        self.timeout = timeout
        if session is None:
            session = requests.Session()
            adapter = HTTPAdapter(pool_connections=10, pool_maxsize=pool_maxsize)
            session.mount("https://", adapter)
            session.mount("http://", adapter)
        self.session = session

    def __call__(self, key_id: str, api_key: str) -> UsageRecord:
        return self.fetch(key_id, api_key)

    def fetch(self, key_id: str, api_key: str) -> UsageRecord:
        """
        查询用量。
        :return: UsageRecord；远程返回非2xx时只带 error 字段（视为已处理，不重试）
        :raises TransportError: 网络失败
        :raises DecodeError: 响应无法解析
        """
        try:
            payload = self._request(api_key)
        except RemoteStatusError as e:
            return UsageRecord.from_error(key_id, e)

        try:
            usage = payload["usage"]
            standard = usage.get("standard") or {}
            total_allowance = float(standard.get("totalAllowance") or 0)
            used = float(standard.get("orgTotalTokensUsed") or 0)
            used_ratio = float(standard.get("usedRatio") or 0)
            start_date = format_date(int(usage.get("startDate") or 0))
            end_date = format_date(int(usage.get("endDate") or 0))
        except (KeyError, TypeError, ValueError, AttributeError, OverflowError, OSError) as e:
            raise DecodeError(f"failed to decode response: {e!r}") from e

        return UsageRecord(
            id=key_id,
            key=mask_key(api_key),
            start_date=start_date,
            end_date=end_date,
            total_allowance=total_allowance,
            org_total_tokens_used=used,
            remaining=total_allowance - used,
            used_ratio=used_ratio,
            last_updated=datetime.utcnow(),
        )

    def _request(self, api_key: str) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {api_key}",
            "User-Agent": USER_AGENT,
        }
        try:
            resp = self.session.get(self.url, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransportError(f"API request failed: {e}") from e

        if not 200 <= resp.status_code < 300:
            raise RemoteStatusError(resp.status_code)

        try:
            data = resp.json()
        except ValueError as e:
            raise DecodeError(f"failed to decode response: {e}") from e
        if not isinstance(data, dict):
            raise DecodeError(f"failed to decode response: unexpected {type(data).__name__}")
        return data

    def close(self):
        self.session.close()
