"""数据模型模块"""

from credit_gateway.models.session import AnonymousSession
from credit_gateway.models.ledger import CreditLedgerEntry, AdminAuditLog
from credit_gateway.models.rate_limit import RateLimitWindow, LoginAttempt
from credit_gateway.models.model_stats import ModelStat

__all__ = [
    "AnonymousSession",
    "CreditLedgerEntry",
    "AdminAuditLog",
    "RateLimitWindow",
    "LoginAttempt",
    "ModelStat",
]
