"""模型目录与价格服务

从 OpenRouter 拉取模型列表（httpx，显式超时），区分对话模型与图片模型，
原始列表通过 PricingCache 缓存在 Redis 中。上游失败时退回默认模型列表。
"""

import json
import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field
from redis.asyncio import Redis
from redis.exceptions import RedisError

from credit_gateway.core.config import Settings
from credit_gateway.services.pricing import ChatPricing, ImagePricing, is_model_free

logger = logging.getLogger(__name__)

DEFAULT_CHAT_MODEL = "openai/gpt-oss-120b"
DEFAULT_IMAGE_MODEL = "google/gemini-2.5-flash-image"
DEFAULT_CONTEXT_LENGTH = 4096


class ChatModel(BaseModel):
    id: str
    name: str
    provider: str
    context_length: int = DEFAULT_CONTEXT_LENGTH
    pricing: Optional[ChatPricing] = None
    is_free: bool = False


class ImageModel(BaseModel):
    id: str
    name: str
    provider: str
    pricing: Optional[ImagePricing] = None


class CatalogResult(BaseModel):
    models: List[Any] = Field(default_factory=list)
    error: Optional[str] = None


class PricingCache:
    """
    模型价格缓存

    进程内只构建一次并显式传给需要它的组件。Redis 不可用时视为未命中。
    """

    KEY = "models"

    def __init__(self, redis: Optional[Redis], ttl_seconds: int = 3600, prefix: str = "cg:pricing:"):
        self.redis = redis
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix

    def _key(self) -> str:
        return f"{self.prefix}{self.KEY}"

    async def get(self) -> Optional[List[Dict[str, Any]]]:
        if self.redis is None:
            return None
        try:
            raw = await self.redis.get(self._key())
        except (RedisError, OSError) as e:
            logger.warning(f"Pricing cache read failed: {e}")
            return None
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Pricing cache held invalid JSON; ignoring")
            return None

    async def set(self, models: List[Dict[str, Any]]) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.set(self._key(), json.dumps(models), ex=self.ttl_seconds)
        except (RedisError, OSError) as e:
            logger.warning(f"Pricing cache write failed: {e}")

    async def invalidate(self) -> None:
        """清除缓存，下一次查询会重新拉取"""
        if self.redis is None:
            return
        try:
            await self.redis.delete(self._key())
        except (RedisError, OSError) as e:
            logger.warning(f"Pricing cache invalidate failed: {e}")


class OpenRouterClient:
    """OpenRouter 模型列表 API 客户端"""

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://openrouter.ai/api/v1",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def list_models(self) -> List[Dict[str, Any]]:
        """获取原始模型列表"""
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
            response = await client.get(f"{self.base_url}/models", headers=headers)
            response.raise_for_status()
            data = response.json()
        return data.get("data") or []


def provider_name(model_id: str) -> str:
    """anthropic/claude-3-haiku -> Anthropic"""
    provider = model_id.split("/")[0]
    return provider[:1].upper() + provider[1:]


def default_chat_models() -> List[ChatModel]:
    return [
        ChatModel(
            id=DEFAULT_CHAT_MODEL,
            name="GPT-OSS 120B (Default)",
            provider="Openai",
            context_length=131072,
            is_free=False,
        )
    ]


def default_image_models() -> List[ImageModel]:
    return [
        ImageModel(
            id=DEFAULT_IMAGE_MODEL,
            name="Gemini 2.5 Flash (Default)",
            provider="Google",
        )
    ]


def to_chat_models(raw_models: List[Dict[str, Any]]) -> List[ChatModel]:
    """筛选文本输入、文本输出的模型"""
    models = []
    for raw in raw_models:
        architecture = raw.get("architecture") or {}
        inputs = architecture.get("input_modalities") or []
        outputs = architecture.get("output_modalities") or []
        if "text" not in inputs or "text" not in outputs:
            continue
        raw_pricing = raw.get("pricing") or {}
        pricing = ChatPricing(prompt=raw_pricing.get("prompt"), completion=raw_pricing.get("completion"))
        models.append(ChatModel(
            id=raw["id"],
            name=raw.get("name") or raw["id"],
            provider=provider_name(raw["id"]),
            context_length=raw.get("context_length") or DEFAULT_CONTEXT_LENGTH,
            pricing=pricing,
            is_free=is_model_free(raw["id"], pricing),
        ))

    models.sort(key=lambda m: (m.provider, m.name))
    if not any(m.id == DEFAULT_CHAT_MODEL for m in models):
        models = default_chat_models() + models
    return models


def to_image_models(raw_models: List[Dict[str, Any]]) -> List[ImageModel]:
    """筛选输出包含图片的模型"""
    models = []
    for raw in raw_models:
        architecture = raw.get("architecture") or {}
        if "image" not in (architecture.get("output_modalities") or []):
            continue
        raw_pricing = raw.get("pricing") or {}
        models.append(ImageModel(
            id=raw["id"],
            name=raw.get("name") or raw["id"],
            provider=provider_name(raw["id"]),
            pricing=ImagePricing(image_output=raw_pricing.get("image")),
        ))

    models.sort(key=lambda m: (m.provider, m.name))
    if not any(m.id == DEFAULT_IMAGE_MODEL for m in models):
        models = default_image_models() + models
    return models


class ModelCatalog:
    """模型目录：先查缓存，未命中时请求上游并写回缓存"""

    def __init__(self, client: OpenRouterClient, cache: PricingCache):
        self.client = client
        self.cache = cache

    async def _raw_models(self) -> tuple[Optional[List[Dict[str, Any]]], Optional[str]]:
        cached = await self.cache.get()
        if cached is not None:
            return cached, None

        try:
            raw = await self.client.list_models()
        except httpx.HTTPStatusError as e:
            logger.error(f"OpenRouter models API error: {e.response.status_code}")
            return None, "Failed to fetch models from OpenRouter"
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Error fetching models from OpenRouter: {e}")
            return None, "Network error fetching models"

        await self.cache.set(raw)
        return raw, None

    async def chat_models(self) -> CatalogResult:
        raw, error = await self._raw_models()
        if raw is None:
            return CatalogResult(models=default_chat_models(), error=error)
        return CatalogResult(models=to_chat_models(raw))

    async def image_models(self) -> CatalogResult:
        raw, error = await self._raw_models()
        if raw is None:
            return CatalogResult(models=default_image_models(), error=error)
        return CatalogResult(models=to_image_models(raw))

    async def chat_pricing(self, model_id: str) -> Optional[ChatPricing]:
        """对话模型价格；模型不存在或价格不完整时返回 None"""
        result = await self.chat_models()
        for model in result.models:
            if model.id == model_id:
                if model.pricing and model.pricing.prompt and model.pricing.completion:
                    return model.pricing
                return None
        return None

    async def image_pricing(self, model_id: str) -> Optional[ImagePricing]:
        result = await self.image_models()
        for model in result.models:
            if model.id == model_id:
                return model.pricing
        return None

    async def refresh(self) -> None:
        await self.cache.invalidate()


def create_model_catalog(settings: Settings, redis: Optional[Redis]) -> ModelCatalog:
    """在应用生命周期中构建一次"""
    client = OpenRouterClient(
        api_key=settings.openrouter_api_key,
        base_url=settings.openrouter_base_url,
        timeout=settings.pricing_fetch_timeout_seconds,
    )
    cache = PricingCache(redis, ttl_seconds=settings.pricing_cache_ttl_seconds)
    return ModelCatalog(client, cache)
