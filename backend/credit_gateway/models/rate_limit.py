"""限流与登录锁定模型"""

from sqlalchemy import BigInteger, Column, DateTime, Integer, String, UniqueConstraint

from credit_gateway.core.database import Base, utc_now


class RateLimitWindow(Base):
    """固定窗口计数，每个 (identifier, endpoint) 一行"""
    __tablename__ = "rate_limit_windows"

    id = Column(Integer, primary_key=True, autoincrement=True)
    identifier = Column(String(200), nullable=False)  # ip_hash:sid
    endpoint = Column(String(50), nullable=False)
    count = Column(Integer, default=0, nullable=False)
    window_start = Column(BigInteger, nullable=False, index=True)  # 毫秒时间戳

    __table_args__ = (
        UniqueConstraint("identifier", "endpoint", name="uq_rate_limit_identifier_endpoint"),
    )


class LoginAttempt(Base):
    """管理员登录失败记录（按 IP 哈希）"""
    __tablename__ = "login_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ip_hash = Column(String(64), unique=True, nullable=False)
    attempt_count = Column(Integer, default=0, nullable=False)
    last_attempt = Column(DateTime, default=utc_now, nullable=False, index=True)
    locked_until = Column(DateTime, nullable=True)
    lockout_count = Column(Integer, default=0, nullable=False)
