"""模型耗时统计"""

from sqlalchemy import Column, DateTime, Float, Integer, String

from credit_gateway.core.database import Base, utc_now


class ModelStat(Base):
    """每个模型一行，生成完成后更新平均耗时（指数移动平均）"""
    __tablename__ = "model_stats"

    model_id = Column(String(200), primary_key=True)
    count = Column(Integer, default=0, nullable=False)
    avg_ms = Column(Float, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)
