"""API_PROXY plugin - outbound HTTP with SSRF protection and GET caching."""

import hashlib
import json
import time
from typing import Any, Dict, Optional, TYPE_CHECKING

import httpx

from constants import API_PROXY_CACHE_PREFIX
from core.config import Settings
from core.logging import get_logger, log_http_call
from services.engine.models import StepContext
from services.plugins.ssrf import SSRFError, check_url

if TYPE_CHECKING:
    from core.cache import CacheService

logger = get_logger(__name__)

BODY_METHODS = frozenset(["POST", "PUT", "PATCH"])


def cache_key(method: str, url: str, headers: Dict[str, Any]) -> str:
    """apiproxy:{method}:{url}:{first 16 hex of sha256(headers)}"""
    headers_hash = hashlib.sha256(json.dumps(headers, sort_keys=True).encode("utf-8")).hexdigest()[:16]
    return f"{API_PROXY_CACHE_PREFIX}:{method}:{url}:{headers_hash}"


async def handle_api_proxy(
    context: StepContext,
    settings: Settings,
    cache: Optional["CacheService"] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, Any]:
    """Make one HTTP request on behalf of a workflow step.

    Args:
        context: Step context; url/method/headers/body come from config, then input
        settings: Timeout and default cache TTL
        cache: Response cache for GET requests
        transport: Optional httpx transport (tests)

    Returns:
        Plugin result dict; failures carry status_code for retry classification
    """
    config = context.config
    data = context.input or {}
    url = config.get("url") or data.get("url")
    method = str(config.get("method") or data.get("method") or "GET").upper()
    headers = dict(config.get("headers") or data.get("headers") or {})
    body = config.get("body", data.get("body"))
    cache_ttl = config.get("cacheTtl") or settings.api_proxy_cache_ttl
    use_cache = cache is not None and config.get("cache") is not False and method == "GET"
    timeout = float(config.get("timeout") or settings.api_proxy_timeout)

    try:
        check_url(url)
    except SSRFError as e:
        logger.warning("SSRF blocked request", node_id=context.node_id, url=url, reason=e.reason)
        return {"success": False, "error": str(e), "retryable": False}

    key = cache_key(method, url, headers)
    if use_cache:
        cached = await cache.get(key)
        if cached:
            log_http_call(logger, method, url, status=cached.get("status"), cached=True, node_id=context.node_id)
            return {"success": True, "output": {**cached, "cached": True}}

    request_kwargs: Dict[str, Any] = {"headers": {"Content-Type": "application/json", **headers}}
    if body is not None and method in BODY_METHODS:
        if isinstance(body, (str, bytes)):
            request_kwargs["content"] = body
        else:
            request_kwargs["json"] = body

    start = time.monotonic()
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport, follow_redirects=False) as client:
            response = await client.request(method, url, **request_kwargs)
    except httpx.TimeoutException:
        logger.error("HTTP request timed out", node_id=context.node_id, url=url)
        return {"success": False, "error": f"Request timeout after {timeout} seconds", "retryable": True}
    except httpx.TransportError as e:
        logger.error("HTTP request failed", node_id=context.node_id, url=url, error=str(e))
        return {"success": False, "error": f"Network error: {e}", "retryable": True}

    try:
        response_data: Any = response.json()
    except ValueError:
        response_data = response.text

    result = {
        "status": response.status_code,
        "statusText": response.reason_phrase,
        "headers": dict(response.headers),
        "data": response_data,
        "cached": False,
    }
    log_http_call(logger, method, url, status=response.status_code, node_id=context.node_id,
                  duration_ms=int((time.monotonic() - start) * 1000))

    if not response.is_success:
        return {
            "success": False,
            "error": f"HTTP {response.status_code}: {response.reason_phrase}",
            "status_code": response.status_code,
        }

    if use_cache:
        await cache.set(key, result, ttl=cache_ttl)

    return {"success": True, "output": result}
