"""错误与拒绝类型

启动配置错误和账本完整性错误是致命的，用异常表示；
可预期的拒绝（限流、额度不足、CSRF 失败等）作为结果值返回。
"""

from enum import Enum
from typing import Optional


class ConfigurationError(RuntimeError):
    """密钥缺失/过短或代理信任配置危险，启动时立即失败"""


class SessionNotFoundError(LookupError):
    """账本操作引用了不存在的会话"""

    def __init__(self, sid: str):
        super().__init__(f"Session not found: {sid}")
        self.sid = sid


class LedgerInconsistencyError(RuntimeError):
    """缓存余额与账本合计不一致（完整性违规，需要对账工具处理）"""

    def __init__(self, sid: str, cached_balance: int, ledger_sum: int):
        super().__init__(
            f"Ledger inconsistency for session {sid}: "
            f"cached balance {cached_balance} != ledger sum {ledger_sum}"
        )
        self.sid = sid
        self.cached_balance = cached_balance
        self.ledger_sum = ledger_sum


class ConcurrentUpdateError(RuntimeError):
    """乐观并发更新在重试上限内仍未成功"""


class RejectionReason(str, Enum):
    """面向用户的拒绝原因"""
    CSRF_REJECTED = "csrf_rejected"
    INVALID_ORIGIN = "invalid_origin"
    RATE_LIMITED = "rate_limited"
    LOCKED_OUT = "locked_out"
    SPEND_CAP_EXCEEDED = "spend_cap_exceeded"
    INSUFFICIENT_CREDIT = "insufficient_credit"
    SESSION_INVALID = "session_invalid"
    PAYLOAD_TOO_LARGE = "payload_too_large"


# 拒绝原因 -> HTTP 状态码
REJECTION_STATUS: dict[RejectionReason, int] = {
    RejectionReason.CSRF_REJECTED: 403,
    RejectionReason.INVALID_ORIGIN: 403,
    RejectionReason.RATE_LIMITED: 429,
    RejectionReason.LOCKED_OUT: 429,
    RejectionReason.SPEND_CAP_EXCEEDED: 402,
    RejectionReason.INSUFFICIENT_CREDIT: 402,
    RejectionReason.SESSION_INVALID: 401,
    RejectionReason.PAYLOAD_TOO_LARGE: 413,
}


def status_for(reason: Optional[RejectionReason]) -> int:
    if reason is None:
        return 200
    return REJECTION_STATUS[reason]
