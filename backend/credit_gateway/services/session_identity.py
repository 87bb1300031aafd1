"""会话身份服务

签发与校验绑定客户端 IP 的会话令牌（HS256 JWT），并管理匿名会话记录。

令牌有两种形态：
- 旧版：只携带 sid，校验通过但需要刷新
- 当前版：携带 sid 与 ip_hash，IP 哈希不一致时视为无效
"""

import logging
import uuid
from datetime import timedelta
from typing import Optional

import jwt
from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from credit_gateway.core.config import Settings
from credit_gateway.core.database import start_of_utc_day, utc_now
from credit_gateway.core.security import Tier, constant_time_equals
from credit_gateway.models.session import AnonymousSession

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"


class TokenClaims(BaseModel):
    """令牌中携带的声明"""
    sid: str
    ip_hash: Optional[str] = None

    @property
    def is_legacy(self) -> bool:
        return self.ip_hash is None


class SessionValidation(BaseModel):
    """请求级会话校验结果"""
    valid: bool
    sid: Optional[str] = None
    needs_refresh: bool = False
    current_ip_hash: Optional[str] = None


class SessionIdentityManager:
    """会话令牌签发与校验"""

    def __init__(self, secret: str, token_ttl_days: int = 365):
        self.secret = secret
        self.token_ttl = timedelta(days=token_ttl_days)

    def issue(self, sid: str, ip_hash: Optional[str] = None) -> str:
        """签发会话令牌；新令牌总是应当带上 ip_hash"""
        now = utc_now()
        payload = {
            "sid": sid,
            "iat": now,
            "exp": now + self.token_ttl,
        }
        if ip_hash:
            payload["ip_hash"] = ip_hash
        return jwt.encode(payload, self.secret, algorithm=JWT_ALGORITHM)

    def verify(self, token: Optional[str]) -> Optional[TokenClaims]:
        """
        校验签名与过期时间

        Returns:
            TokenClaims，签名错误、过期或缺少 sid 时返回 None
        """
        if not token:
            return None
        try:
            payload = jwt.decode(token, self.secret, algorithms=[JWT_ALGORITHM])
        except jwt.ExpiredSignatureError:
            logger.info("Session token expired")
            return None
        except jwt.InvalidTokenError:
            return None

        sid = payload.get("sid")
        if not sid or not isinstance(sid, str):
            return None
        ip_hash = payload.get("ip_hash")
        if ip_hash is not None and not isinstance(ip_hash, str):
            return None
        return TokenClaims(sid=sid, ip_hash=ip_hash)

    def validate_against_request(
        self,
        token: Optional[str],
        current_ip_hash: str,
    ) -> SessionValidation:
        """
        将令牌与当前请求的 IP 哈希比对

        - 无令牌或签名无效：无效
        - 旧版令牌：有效，needs_refresh=True
        - IP 哈希一致：有效
        - IP 哈希不一致：无效（可能是令牌被盗用）
        """
        claims = self.verify(token)
        if claims is None:
            return SessionValidation(valid=False, current_ip_hash=current_ip_hash)

        if claims.is_legacy:
            return SessionValidation(
                valid=True,
                sid=claims.sid,
                needs_refresh=True,
                current_ip_hash=current_ip_hash,
            )

        if constant_time_equals(claims.ip_hash, current_ip_hash):
            return SessionValidation(valid=True, sid=claims.sid, current_ip_hash=current_ip_hash)

        logger.info(
            f"Session token IP mismatch for sid {claims.sid[:8]} "
            f"(token {claims.ip_hash[:8]}, request {current_ip_hash[:8]})"
        )
        return SessionValidation(valid=False, current_ip_hash=current_ip_hash)


def generate_session_id() -> str:
    return str(uuid.uuid4())


def session_cookie_options(settings: Settings) -> dict:
    """会话 Cookie 参数（页面脚本不可读，同站宽松）"""
    return {
        "key": settings.session_cookie_name,
        "httponly": True,
        "secure": settings.is_production,
        "samesite": "lax",
        "path": "/",
        "max_age": settings.session_token_ttl_days * 24 * 60 * 60,
    }


async def create_session(
    db: AsyncSession,
    ip_hash: str,
    settings: Settings,
    sid: Optional[str] = None,
) -> AnonymousSession:
    """首次访问时创建匿名会话"""
    now = utc_now()
    session = AnonymousSession(
        id=sid or generate_session_id(),
        identity_hash=ip_hash,
        credit_balance=0,
        tier=Tier.PAID.value,
        created_at=now,
        last_seen_at=now,
        last_ip_hash=ip_hash,
        expires_at=now + timedelta(days=settings.session_ttl_days),
        daily_spend_usd=0.0,
        daily_spend_limit_usd=settings.default_daily_spend_limit_usd,
        daily_reset_at=start_of_utc_day(now),
        version=0,
    )
    db.add(session)
    await db.commit()
    logger.info(f"Created session {session.id[:8]} for ip {ip_hash[:8]}")
    return session


async def get_active_session(db: AsyncSession, sid: str) -> Optional[AnonymousSession]:
    """获取未过期的会话"""
    result = await db.execute(select(AnonymousSession).where(AnonymousSession.id == sid))
    session = result.scalar_one_or_none()
    if session is None:
        return None
    if session.expires_at <= utc_now():
        return None
    return session


async def touch_session(
    db: AsyncSession,
    sid: str,
    ip_hash: Optional[str],
    ttl_days: int,
) -> None:
    """更新最后访问时间并滑动过期时间"""
    now = utc_now()
    values = {
        "last_seen_at": now,
        "expires_at": now + timedelta(days=ttl_days),
    }
    if ip_hash:
        values["last_ip_hash"] = ip_hash
    await db.execute(
        update(AnonymousSession).where(AnonymousSession.id == sid).values(**values)
    )
    await db.commit()


async def upgrade_to_admin(db: AsyncSession, sid: str) -> bool:
    """将会话升级为管理员等级"""
    result = await db.execute(
        update(AnonymousSession)
        .where(AnonymousSession.id == sid)
        .values(tier=Tier.ADMIN.value, version=AnonymousSession.version + 1)
    )
    await db.commit()
    return result.rowcount > 0
