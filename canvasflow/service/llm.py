from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Protocol, runtime_checkable

import httpx

from canvasflow.logging import get_logger, sanitize_error_message
from canvasflow.service.errors import (
    AuthConfigError,
    ServiceError,
    UpstreamFailureError,
    UpstreamThrottledError,
)
from canvasflow.service.prompts import PromptPayload

logger = get_logger(__name__)

DEFAULT_GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_GEMINI_MODEL = "gemini-2.0-flash"

_THROTTLE_MARKERS = ("quota", "rate limit", "rate_limit", "resource_exhausted", "too many requests")
_AUTH_MARKERS = ("api_key", "api key", "permission_denied", "unauthenticated")


@runtime_checkable
class AIClient(Protocol):
    """Completion backend the engine invokes once per run."""

    model: str

    @property
    def is_configured(self) -> bool: ...

    async def generate(self, payload: PromptPayload, *, timeout_seconds: Optional[float] = None) -> str: ...


def classify_upstream_error(
    status_code: Optional[int], message: str, api_status: Optional[str] = None
) -> ServiceError:
    """Map a backend failure onto the service error taxonomy."""
    lowered = f"{message} {api_status or ''}".lower()
    safe_message = sanitize_error_message(message) if message else "AI backend error"
    if status_code in (401, 403) or any(marker in lowered for marker in _AUTH_MARKERS):
        return AuthConfigError(
            "Invalid API key",
            status_code=401,
            detail={"upstream_status": status_code, "message": safe_message},
        )
    if status_code == 429 or any(marker in lowered for marker in _THROTTLE_MARKERS):
        return UpstreamThrottledError(
            "Rate limit exceeded, please try again in a moment",
            detail={"upstream_status": status_code},
        )
    return UpstreamFailureError(
        "Workflow execution failed",
        detail={"upstream_status": status_code, "reason": "upstream", "message": safe_message},
    )


def extract_candidate_text(response: Mapping[str, Any]) -> str:
    """Join the text parts of the first candidate that has any."""
    candidates = response.get("candidates")
    if not isinstance(candidates, list):
        return ""
    for candidate in candidates:
        if not isinstance(candidate, Mapping):
            continue
        content = candidate.get("content")
        if not isinstance(content, Mapping):
            continue
        parts = content.get("parts")
        if not isinstance(parts, list):
            continue
        texts = [part["text"] for part in parts if isinstance(part, Mapping) and isinstance(part.get("text"), str)]
        if texts:
            return "".join(texts)
    return ""


class GeminiClient:
    """Generative Language REST client used for workflow runs.

    The only automatic retry: when a multimodal part is rejected with a
    generic upstream failure, the same prompt is sent once more as text only.
    """

    def __init__(
        self,
        api_key: Optional[str],
        *,
        model: str = DEFAULT_GEMINI_MODEL,
        api_base: str = DEFAULT_GEMINI_API_BASE,
        default_timeout_seconds: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.api_base = api_base.rstrip("/")
        self.default_timeout_seconds = default_timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        """Check if the client has an API key configured."""
        return bool(self.api_key)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.default_timeout_seconds, connect=10.0),
                headers={"x-goog-api-key": self.api_key or ""},
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _request_body(self, payload: PromptPayload, *, include_media: bool) -> Dict[str, Any]:
        parts: List[Dict[str, Any]] = [{"text": payload.text}]
        if include_media and payload.multimodal is not None:
            parts.append(
                {
                    "fileData": {
                        "mimeType": payload.multimodal.mime_type,
                        "fileUri": payload.multimodal.uri,
                    }
                }
            )
        return {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": payload.generation.to_payload(),
        }

    async def generate(self, payload: PromptPayload, *, timeout_seconds: Optional[float] = None) -> str:
        if not self.is_configured:
            raise AuthConfigError(
                "AI service not configured",
                detail={"mode": "offline", "hint": "GOOGLE_GEMINI_API_KEY is not set"},
            )
        timeout = timeout_seconds or self.default_timeout_seconds
        if payload.multimodal is None:
            return await self._generate_once(payload, include_media=False, timeout=timeout)
        try:
            return await self._generate_once(payload, include_media=True, timeout=timeout)
        except UpstreamFailureError as exc:
            if exc.detail.get("reason") == "timeout":
                raise
            logger.warning(
                "ai_multimodal_rejected",
                model=self.model,
                uri=payload.multimodal.uri,
                error=exc.message,
                upstream_status=exc.detail.get("upstream_status"),
            )
            return await self._generate_once(payload, include_media=False, timeout=timeout)

    async def _generate_once(self, payload: PromptPayload, *, include_media: bool, timeout: float) -> str:
        client = await self._get_client()
        url = f"{self.api_base}/models/{self.model}:generateContent"
        try:
            response = await client.post(
                url,
                json=self._request_body(payload, include_media=include_media),
                timeout=timeout,
            )
        except httpx.TimeoutException as exc:
            logger.error("ai_invoke_timeout", model=self.model, timeout_seconds=timeout)
            raise UpstreamFailureError(
                "AI backend timed out", detail={"reason": "timeout", "timeout_seconds": timeout}
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("ai_invoke_transport_error", model=self.model, error_type=type(exc).__name__)
            raise UpstreamFailureError(
                "Failed to connect to AI backend", detail={"reason": "transport"}
            ) from exc

        try:
            data = response.json()
        except ValueError:
            data = {}

        error_body = data.get("error") if isinstance(data, dict) else None
        if response.status_code >= 400 or isinstance(error_body, Mapping):
            message = ""
            api_status = None
            if isinstance(error_body, Mapping):
                message = str(error_body.get("message") or "")
                api_status = error_body.get("status")
            error = classify_upstream_error(response.status_code, message or response.reason_phrase, api_status)
            logger.error(
                "ai_invoke_failed",
                model=self.model,
                status_code=response.status_code,
                error_code=error.error_code,
                multimodal=include_media,
            )
            raise error

        text = extract_candidate_text(data if isinstance(data, dict) else {})
        if not text:
            raise UpstreamFailureError(
                "AI backend returned no content", detail={"reason": "empty"}
            )
        finish_reason = None
        candidates = data.get("candidates") or []
        if candidates and isinstance(candidates[0], Mapping):
            finish_reason = candidates[0].get("finishReason")
        if finish_reason == "MAX_TOKENS":
            logger.warning("ai_output_truncated", model=self.model, chars=len(text))
        logger.info(
            "ai_invoke_success",
            model=self.model,
            chars=len(text),
            multimodal=include_media,
            finish_reason=finish_reason,
        )
        return text
