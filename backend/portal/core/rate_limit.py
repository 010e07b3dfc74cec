"""
接口限流（limits 滑动窗口，进程内存储）

分级：
- strict   5 次 / 15 分钟（登录码）
- standard 30 次 / 分钟
- relaxed  100 次 / 分钟
- invite   10 次 / 小时（团队邀请）
"""

import logging
import math
import time

from fastapi import HTTPException
from limits import parse
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter

logger = logging.getLogger(__name__)

RATE_LIMIT_TIERS = {
    "strict": parse("5/15 minutes"),
    "standard": parse("30/minute"),
    "relaxed": parse("100/minute"),
    "invite": parse("10/hour"),
}

_storage = MemoryStorage()
_limiter = MovingWindowRateLimiter(_storage)


def check_rate_limit(key: str, tier: str = "standard") -> None:
    """超出限制时抛出 429，带 Retry-After"""
    item = RATE_LIMIT_TIERS[tier]
    if _limiter.hit(item, tier, key):
        return

    reset_at, _remaining = _limiter.get_window_stats(item, tier, key)
    retry_after = max(1, math.ceil(reset_at - time.time()))
    logger.warning(f"⛔ 触发限流: tier={tier} key={key} retry_after={retry_after}s")
    raise HTTPException(
        status_code=429,
        detail="Too many requests. Please try again later.",
        headers={"Retry-After": str(retry_after)},
    )


def reset_rate_limits() -> None:
    """清空计数（测试用）"""
    _storage.reset()
