"""Redis 连接

客户端在应用生命周期中创建一次，挂在 app.state 上，由需要它的组件显式引用。
"""

import logging
from typing import Optional

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


def create_redis(redis_url: str) -> Redis:
    """创建 Redis 客户端（连接在首次使用时建立）"""
    return redis.from_url(
        redis_url,
        encoding="utf-8",
        decode_responses=True,
    )


async def ping_redis(client: Optional[Redis]) -> bool:
    """健康检查用：Redis 是否可达"""
    if client is None:
        return False
    try:
        return bool(await client.ping())
    except (RedisError, OSError) as e:
        logger.warning(f"Redis ping failed: {e}")
        return False


async def close_redis(client: Optional[Redis]) -> None:
    """关闭 Redis 连接"""
    if client is not None:
        await client.aclose()
