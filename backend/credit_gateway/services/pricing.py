"""价格与积分换算

第三方价格（每百万 token 或每张图片的美元价格，字符串形式）换算为积分：
    credits = max(1, ceil(usd * PREMIUM_MULTIPLIER / CREDIT_USD))

金额计算全部使用 Decimal。
"""

import math
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

from pydantic import BaseModel

CREDIT_USD = Decimal("0.01")          # 1 积分 = $0.01
PREMIUM_MULTIPLIER = Decimal("1.25")  # 在第三方价格上加价 25%
MIN_CHAT_CREDITS = 1
DEFAULT_ESTIMATED_TOKENS = 2000       # 约 1000 prompt + 1000 completion
SCENE_PLANNER_ESTIMATED_TOKENS = 450
TOKENS_PER_PRICE_UNIT = 1_000_000

# 生成前拿到的图片价格会系统性低估真实费用，预留时乘以保守系数
CONSERVATIVE_ESTIMATE_MULTIPLIER = 35
# 没有价格的图片模型按该积分数预留
DEFAULT_CREDITS_COST = 20

RESOLUTION_MULTIPLIERS = {
    "1K": Decimal("1.0"),
    "2K": Decimal("3.5"),
    "4K": Decimal("6.5"),
}
# 只有这些模型真正遵循分辨率参数
RESOLUTION_MODEL_PREFIXES = ("google/gemini",)

FREE_MODEL_SUFFIX = ":free"

Number = Union[int, float, Decimal]


class ChatPricing(BaseModel):
    """对话模型价格（美元 / 百万 token）"""
    prompt: Optional[str] = None
    completion: Optional[str] = None


class ImagePricing(BaseModel):
    """图片模型价格（美元 / 张）"""
    image_output: Optional[str] = None


class ActualUsageCredits(BaseModel):
    credits: int
    used_actual: bool


def parse_price(value: Optional[str]) -> Optional[Decimal]:
    """解析价格字符串，空值、非数字、NaN、无穷大返回 None"""
    if value is None or value == "":
        return None
    try:
        price = Decimal(str(value).strip())
    except InvalidOperation:
        return None
    if not price.is_finite():
        return None
    return price


def _to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def usd_to_credits(usd: Number, minimum: int = MIN_CHAT_CREDITS) -> int:
    """美元成本（加价前）换算为积分，向上取整，最少 minimum"""
    effective = _to_decimal(usd) * PREMIUM_MULTIPLIER
    return max(minimum, math.ceil(effective / CREDIT_USD))


def credits_to_usd(credits: int) -> float:
    """积分对应的美元金额，保留 6 位小数"""
    return round(float(Decimal(credits) * CREDIT_USD), 6)


def is_model_free(model_id: str, pricing: Optional[ChatPricing] = None) -> bool:
    """模型 ID 以 :free 结尾，或 prompt/completion 价格都是 "0" """
    if model_id.endswith(FREE_MODEL_SUFFIX):
        return True
    if pricing and pricing.prompt and pricing.completion:
        return pricing.prompt == "0" and pricing.completion == "0"
    return False


def _chat_rates(pricing: Optional[ChatPricing]) -> Optional[tuple[Decimal, Decimal]]:
    if pricing is None:
        return None
    prompt_rate = parse_price(pricing.prompt)
    completion_rate = parse_price(pricing.completion)
    if prompt_rate is None or completion_rate is None:
        return None
    return prompt_rate, completion_rate


def _token_cost(rates: tuple[Decimal, Decimal], prompt_tokens: int, completion_tokens: int) -> Decimal:
    prompt_rate, completion_rate = rates
    return (prompt_rate * prompt_tokens + completion_rate * completion_tokens) / TOKENS_PER_PRICE_UNIT


def estimate_chat_credits(
    pricing: Optional[ChatPricing],
    estimated_tokens: int = DEFAULT_ESTIMATED_TOKENS,
) -> Optional[int]:
    """
    生成前的对话积分估算

    token 按一半 prompt、一半 completion 拆分；两项价格都为 0 时收取最低积分。

    Returns:
        积分数，价格缺失或无法解析时返回 None
    """
    rates = _chat_rates(pricing)
    if rates is None:
        return None
    if rates == (0, 0):
        return MIN_CHAT_CREDITS

    prompt_tokens = estimated_tokens // 2
    completion_tokens = estimated_tokens - prompt_tokens
    return usd_to_credits(_token_cost(rates, prompt_tokens, completion_tokens))


def actual_chat_credits(
    pricing: Optional[ChatPricing],
    prompt_tokens: int,
    completion_tokens: int,
) -> Optional[int]:
    """按实际 token 用量计算积分"""
    rates = _chat_rates(pricing)
    if rates is None:
        return None
    if rates == (0, 0):
        return MIN_CHAT_CREDITS
    return usd_to_credits(_token_cost(rates, prompt_tokens, completion_tokens))


def image_credits_cost(price: Optional[str]) -> Optional[int]:
    """单张图片价格换算为积分；缺失、非正数或无法解析时返回 None"""
    parsed = parse_price(price)
    if parsed is None or parsed <= 0:
        return None
    return usd_to_credits(parsed)


def conservative_image_estimate(price: Optional[str]) -> Optional[int]:
    """图片生成前的保守预留积分"""
    base = image_credits_cost(price)
    if base is None:
        return None
    return math.ceil(base * CONSERVATIVE_ESTIMATE_MULTIPLIER)


def supports_resolution(model_id: Optional[str]) -> bool:
    """模型是否遵循输出分辨率参数（按模型 ID 前缀判断，大小写不敏感）"""
    if not model_id:
        return False
    lowered = model_id.lower()
    return any(lowered.startswith(prefix) for prefix in RESOLUTION_MODEL_PREFIXES)


def adjusted_image_credits(
    base_credits: Optional[int],
    resolution: str = "1K",
    model_id: Optional[str] = None,
) -> int:
    """
    按分辨率调整图片积分

    没有价格时使用 DEFAULT_CREDITS_COST；只有支持分辨率的模型才乘以分辨率系数。
    """
    if base_credits is None:
        return DEFAULT_CREDITS_COST
    if not supports_resolution(model_id):
        return base_credits
    multiplier = RESOLUTION_MULTIPLIERS.get(resolution.upper(), Decimal("1.0"))
    return math.ceil(Decimal(base_credits) * multiplier)


def credits_from_actual_usage(actual_usd: Optional[Number], fallback_credits: int) -> ActualUsageCredits:
    """
    根据服务方报告的实际费用计算积分

    实际费用缺失或不为正时退回到预留值。
    """
    if actual_usd is None:
        return ActualUsageCredits(credits=fallback_credits, used_actual=False)
    actual = _to_decimal(actual_usd)
    if not actual.is_finite() or actual <= 0:
        return ActualUsageCredits(credits=fallback_credits, used_actual=False)
    return ActualUsageCredits(credits=usd_to_credits(actual), used_actual=True)


def estimate_credits(
    pricing: Union[ChatPricing, ImagePricing, None],
    estimated_tokens: int = DEFAULT_ESTIMATED_TOKENS,
    resolution: str = "1K",
    model_id: Optional[str] = None,
) -> Optional[int]:
    """
    生成前的积分估算（预留金额）

    对话模型按 token 估算；图片模型使用保守系数并按分辨率调整。
    对话模型价格缺失时返回 None，调用方应拒绝该模型。
    """
    if isinstance(pricing, ImagePricing):
        return adjusted_image_credits(
            conservative_image_estimate(pricing.image_output),
            resolution,
            model_id,
        )
    return estimate_chat_credits(pricing, estimated_tokens)


def reconcile_actual(
    pricing: Union[ChatPricing, ImagePricing, None],
    reserved_credits: int,
    actual_usd: Optional[Number] = None,
    prompt_tokens: Optional[int] = None,
    completion_tokens: Optional[int] = None,
) -> ActualUsageCredits:
    """
    生成完成后计算真实积分

    优先使用实际美元费用；其次是对话模型的实际 token 数；都没有时按预留值结算。
    """
    from_usd = credits_from_actual_usage(actual_usd, reserved_credits)
    if from_usd.used_actual:
        return from_usd

    if isinstance(pricing, ChatPricing) and prompt_tokens is not None and completion_tokens is not None:
        credits = actual_chat_credits(pricing, prompt_tokens, completion_tokens)
        if credits is not None:
            return ActualUsageCredits(credits=credits, used_actual=True)

    return ActualUsageCredits(credits=reserved_credits, used_actual=False)
