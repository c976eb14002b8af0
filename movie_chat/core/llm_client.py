from __future__ import annotations

import json
import logging
import re
import time
import uuid
from typing import Any, Dict, List, Optional

import httpx

from movie_chat.core.metrics import metrics
from movie_chat.core.settings import SETTINGS

logger = logging.getLogger(__name__)

_ANALYZE_SYSTEM_PROMPT = (
    "You classify messages sent to a movie recommendation assistant. "
    "Answer with a single JSON object and nothing else: "
    '{"intent": one of ["greeting", "farewell", "recommendation", "random", "follow_up", "comparison", "off_topic"], '
    '"confidence": number between 0 and 1, "language": "vi" or "en", '
    '"keywords": up to 5 short search keywords (genres, moods, years, titles)}. '
    "Use follow_up when the user asks for more of what was already suggested, "
    "comparison when two or more titles are compared, random when no preference is given."
)


class LlmCallError(Exception):
    def __init__(self, code: str, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code


def _is_failover_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def _provider_chain(primary: str | None = None, fallbacks: tuple[str, ...] | None = None) -> List[tuple[str, str]]:
    urls = [primary or SETTINGS.llm_url]
    for url in SETTINGS.llm_fallback_urls if fallbacks is None else fallbacks:
        if url and url not in urls:
            urls.append(url)
    return [("primary" if idx == 0 else f"fallback_{idx}", url) for idx, url in enumerate(urls)]


def _extract_json(text: str | dict | None) -> dict[str, Any] | None:
    if isinstance(text, dict):
        return text
    if not isinstance(text, str):
        return None
    trimmed = text.strip()
    if trimmed.startswith("```"):
        trimmed = re.sub(r"^```(?:json)?", "", trimmed).strip()
        trimmed = re.sub(r"```$", "", trimmed).strip()
    start = trimmed.find("{")
    end = trimmed.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    try:
        return json.loads(trimmed[start : end + 1])
    except json.JSONDecodeError:
        return None


class LlmClient:
    """Text completion through the llm-gateway ``/v1/generate`` endpoint.

    Providers are tried in order; timeouts, network errors, 429 and 5xx
    responses fail over to the next provider. Anything else raises
    ``LlmCallError`` straight away.
    """

    def __init__(
        self,
        base_url: str | None = None,
        fallback_urls: tuple[str, ...] | None = None,
        timeout_sec: float | None = None,
        enabled: bool | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.providers = _provider_chain(base_url, fallback_urls)
        self.timeout_sec = timeout_sec or SETTINGS.llm_timeout_sec
        self.enabled = SETTINGS.llm_enabled if enabled is None else enabled
        self._transport = transport

    async def chat_completion(
        self,
        messages: List[Dict[str, str]],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        trace_id: str | None = None,
    ) -> Dict[str, Any]:
        if not self.enabled:
            raise LlmCallError("llm_disabled", "llm calls are disabled")
        trace_id = trace_id or uuid.uuid4().hex
        request_id = uuid.uuid4().hex
        payload = {
            "version": "v1",
            "trace_id": trace_id,
            "request_id": request_id,
            "model": model or SETTINGS.llm_compose_model,
            "messages": messages,
            "temperature": SETTINGS.llm_compose_temperature if temperature is None else temperature,
            "max_tokens": max_tokens or SETTINGS.llm_max_tokens,
            "citations_required": False,
        }
        headers = {"x-trace-id": trace_id, "x-request-id": request_id}
        started = time.perf_counter()
        last_error: Exception | None = None
        async with httpx.AsyncClient(transport=self._transport) as client:
            for idx, (provider, base_url) in enumerate(self.providers):
                has_next = idx + 1 < len(self.providers)
                try:
                    response = await client.post(
                        f"{base_url}/v1/generate", json=payload, headers=headers, timeout=self.timeout_sec
                    )
                except (httpx.TimeoutException, httpx.NetworkError) as exc:
                    last_error = exc
                    metrics.inc("chat_llm_route_total", {"provider": provider, "result": "timeout"})
                    if has_next:
                        metrics.inc(
                            "chat_llm_failover_total",
                            {"from": provider, "to": self.providers[idx + 1][0], "reason": "timeout"},
                        )
                        continue
                    raise LlmCallError("llm_timeout", f"llm provider {provider} unreachable: {exc}") from exc
                except httpx.HTTPError as exc:
                    last_error = exc
                    metrics.inc("chat_llm_route_total", {"provider": provider, "result": "error"})
                    if has_next:
                        metrics.inc(
                            "chat_llm_failover_total",
                            {"from": provider, "to": self.providers[idx + 1][0], "reason": "error"},
                        )
                        continue
                    raise LlmCallError("llm_unavailable", f"llm provider {provider} failed: {exc}") from exc
                status_code = int(response.status_code)
                if status_code >= 400:
                    reason = f"http_{status_code}"
                    metrics.inc("chat_llm_route_total", {"provider": provider, "result": reason})
                    if _is_failover_status(status_code) and has_next:
                        metrics.inc(
                            "chat_llm_failover_total",
                            {"from": provider, "to": self.providers[idx + 1][0], "reason": reason},
                        )
                        continue
                    raise LlmCallError("llm_http_error", f"llm provider {provider} returned {status_code}", status_code)
                try:
                    data = response.json()
                except ValueError as exc:
                    metrics.inc("chat_llm_route_total", {"provider": provider, "result": "invalid_json"})
                    raise LlmCallError("llm_invalid_json", "llm response is not json") from exc
                content = data.get("content") if isinstance(data, dict) else None
                if not isinstance(content, str):
                    metrics.inc("chat_llm_route_total", {"provider": provider, "result": "no_content"})
                    raise LlmCallError("llm_no_content", "llm response has no content")
                metrics.inc("chat_llm_route_total", {"provider": provider, "result": "ok"})
                metrics.observe_ms("chat_llm_latency_ms", (time.perf_counter() - started) * 1000.0)
                return {"content": content, "provider": provider}
        raise LlmCallError("llm_unavailable", str(last_error or "no llm provider configured"))

    async def analyze_message(self, text: str, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Ask the model for ``{intent, confidence, language, keywords}``. Raises on any failure."""
        messages = [{"role": "system", "content": _ANALYZE_SYSTEM_PROMPT}]
        if context:
            last_intent = context.get("last_intent")
            history = context.get("history") or []
            lines = [f"{item.get('role')}: {item.get('text')}" for item in history[-4:] if isinstance(item, dict)]
            hints = []
            if last_intent:
                hints.append(f"previous intent: {last_intent}")
            if lines:
                hints.append("recent turns:\n" + "\n".join(lines))
            if hints:
                messages.append({"role": "system", "content": "\n".join(hints)})
        messages.append({"role": "user", "content": text})
        result = await self.chat_completion(messages, model=SETTINGS.llm_intent_model, temperature=0.0, max_tokens=200)
        parsed = _extract_json(result.get("content"))
        if not isinstance(parsed, dict) or not parsed.get("intent"):
            raise LlmCallError("llm_invalid_json", "intent analysis did not return a json object")
        try:
            confidence = float(parsed.get("confidence", 0.0))
        except (TypeError, ValueError):
            confidence = 0.0
        keywords = parsed.get("keywords") if isinstance(parsed.get("keywords"), list) else []
        return {
            "intent": str(parsed.get("intent")),
            "confidence": max(0.0, min(1.0, confidence)),
            "language": parsed.get("language"),
            "keywords": [str(item).strip() for item in keywords if str(item).strip()][:5],
        }


_client: LlmClient | None = None


def get_llm_client() -> LlmClient:
    global _client
    if _client is None:
        _client = LlmClient()
    return _client
