"""可用模型列表 API"""

from fastapi import APIRouter, Depends, Request, Response

from credit_gateway.core.config import get_settings
from credit_gateway.services.model_catalog import (
    CatalogResult,
    ModelCatalog,
    create_model_catalog,
    default_chat_models,
    default_image_models,
)

settings = get_settings()

router = APIRouter(prefix="/api", tags=["models"])

API_KEY_MISSING = "OpenRouter API key not configured"


def get_model_catalog(request: Request) -> ModelCatalog:
    """应用生命周期中构建的模型目录"""
    catalog = getattr(request.app.state, "model_catalog", None)
    if catalog is None:
        catalog = create_model_catalog(settings, getattr(request.app.state, "redis", None))
        request.app.state.model_catalog = catalog
    return catalog


def _payload(result: CatalogResult) -> dict:
    payload = {"models": [m.model_dump() for m in result.models]}
    if result.error:
        payload["error"] = result.error
    return payload


@router.get("/chat-models")
async def list_chat_models(response: Response, catalog: ModelCatalog = Depends(get_model_catalog)) -> dict:
    if not catalog.client.api_key:
        return _payload(CatalogResult(models=default_chat_models(), error=API_KEY_MISSING))

    result = await catalog.chat_models()
    response.headers["Cache-Control"] = "private, max-age=3600"
    return _payload(result)


@router.get("/image-models")
async def list_image_models(catalog: ModelCatalog = Depends(get_model_catalog)) -> dict:
    if not catalog.client.api_key:
        return _payload(CatalogResult(models=default_image_models(), error=API_KEY_MISSING))
    return _payload(await catalog.image_models())
