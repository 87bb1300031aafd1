"""匿名会话模型"""

from sqlalchemy import CheckConstraint, Column, DateTime, Float, Integer, String

from credit_gateway.core.database import Base, utc_now


class AnonymousSession(Base):
    """匿名会话表

    credit_balance 是账本合计的缓存，只能在追加账本记录的同一事务中修改。
    version 用于比较并交换（CAS）更新。
    """
    __tablename__ = "sessions"

    id = Column(String(64), primary_key=True)
    identity_hash = Column(String(64), nullable=False)  # 创建时的 IP 哈希
    credit_balance = Column(Integer, default=0, nullable=False)
    tier = Column(String(10), default="paid", nullable=False)  # paid / admin

    # 时间戳
    created_at = Column(DateTime, default=utc_now, nullable=False)
    last_seen_at = Column(DateTime, default=utc_now, nullable=False)
    last_ip_hash = Column(String(64), nullable=True)
    expires_at = Column(DateTime, nullable=False, index=True)

    # 每日消费上限（美元）
    daily_spend_usd = Column(Float, default=0.0, nullable=False)
    daily_spend_limit_usd = Column(Float, default=5.0, nullable=False)
    daily_reset_at = Column(DateTime, default=utc_now, nullable=False)

    version = Column(Integer, default=0, nullable=False)

    __table_args__ = (
        CheckConstraint("credit_balance >= 0", name="ck_sessions_balance_non_negative"),
    )
