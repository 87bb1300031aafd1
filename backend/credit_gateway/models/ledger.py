"""积分账本模型"""

import uuid

from sqlalchemy import Column, DateTime, Float, Integer, String, UniqueConstraint

from credit_gateway.core.database import Base, utc_now


class CreditLedgerEntry(Base):
    """积分账本（只追加，不修改不删除）"""
    __tablename__ = "credit_ledger"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    sid = Column(String(64), nullable=False, index=True)
    delta = Column(Integer, nullable=False)
    reason = Column(String(20), nullable=False)  # purchase / reservation / generation / refund

    model_id = Column(String(200), nullable=True)
    cost_usd = Column(Float, nullable=True)
    generation_id = Column(String(100), nullable=True)
    invoice_id = Column(String(100), nullable=True)

    created_at = Column(DateTime, default=utc_now, nullable=False, index=True)

    # 同一次生成的每种原因最多一条，同一发票最多入账一次（NULL 互不冲突）
    __table_args__ = (
        UniqueConstraint("sid", "generation_id", "reason", name="uq_ledger_generation_reason"),
        UniqueConstraint("sid", "invoice_id", name="uq_ledger_invoice"),
    )


class AdminAuditLog(Base):
    """管理员用量审计日志（管理员会话不扣费，但每次调用都要留痕）"""
    __tablename__ = "admin_audit_log"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    sid = Column(String(64), nullable=False, index=True)
    endpoint = Column(String(50), nullable=False)
    model_id = Column(String(200), nullable=True)
    estimated_credits = Column(Integer, nullable=True)
    estimated_usd = Column(Float, nullable=True)
    created_at = Column(DateTime, default=utc_now, nullable=False, index=True)
