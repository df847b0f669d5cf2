from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import httpx

from creditmeter.core.config import get_settings
from creditmeter.core.errors import IntegrationUnavailableError, ProviderConfigError, UpstreamProviderError
from creditmeter.providers.llm.base import GenerationResult
from creditmeter.services.audit import record_system_event
from creditmeter.services.resilience import (
    CircuitBreaker,
    get_resilience_redis,
    retry_async,
    upstream_call_policy,
)
from creditmeter.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

_INTEGRATION = "llm.gemini"
_SAFETY_FINISH_REASONS = {"SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII", "RECITATION"}


def build_payload(
    *,
    prompt: str,
    system_instruction: str | None,
    max_output_units: int,
    json_output: bool,
) -> dict[str, Any]:
    generation_config: dict[str, Any] = {"maxOutputTokens": int(max_output_units)}
    if json_output:
        generation_config["responseMimeType"] = "application/json"
    payload: dict[str, Any] = {
        "contents": [{"role": "user", "parts": [{"text": prompt}]}],
        "generationConfig": generation_config,
    }
    if system_instruction:
        payload["systemInstruction"] = {"parts": [{"text": system_instruction}]}
    return payload


def parse_response(body: dict[str, Any]) -> GenerationResult:
    # Extract text and billed usage; blocked prompts surface as safety failures.
    feedback = body.get("promptFeedback") or {}
    block_reason = feedback.get("blockReason")
    candidates = body.get("candidates") or []
    if block_reason and not candidates:
        raise UpstreamProviderError(f"Prompt blocked: {block_reason}", kind="safety")
    if not candidates:
        raise UpstreamProviderError("Provider returned no candidates", kind="unknown")
    candidate = candidates[0] or {}
    finish_reason = candidate.get("finishReason")
    parts = (candidate.get("content") or {}).get("parts") or []
    text = "".join(
        str(part.get("text", "")) for part in parts if isinstance(part, dict) and not part.get("thought")
    )
    if not text and finish_reason in _SAFETY_FINISH_REASONS:
        raise UpstreamProviderError(f"Response blocked: {finish_reason}", kind="safety")
    usage = body.get("usageMetadata") or {}
    return GenerationResult(
        text=text,
        input_units=int(usage.get("promptTokenCount") or 0),
        output_units=int(usage.get("candidatesTokenCount") or 0),
        finish_reason=finish_reason,
    )


def _kind_for_status(status_code: int) -> str:
    if status_code in {401, 403}:
        return "auth"
    if status_code == 429:
        return "quota"
    return "unknown"


class GeminiProvider:
    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._client = client
        self._breaker: CircuitBreaker | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        timeout_s = self._settings.upstream_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(base_url=self._settings.gemini_api_base_url, timeout=timeout_s)
        return self._client

    async def _get_breaker(self) -> CircuitBreaker:
        if self._breaker is not None:
            return self._breaker
        redis = await get_resilience_redis()

        async def _on_transition(name: str, state: str) -> None:
            await record_system_event(
                event_type=f"system.circuit_breaker.{state}",
                metadata={"integration": name},
            )

        self._breaker = CircuitBreaker(_INTEGRATION, redis=redis, on_transition=_on_transition)
        return self._breaker

    def _record(self, start: float, *, success: bool) -> None:
        record_external_call(
            integration=_INTEGRATION,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=success,
        )

    async def generate(
        self,
        *,
        api_key: str,
        model_key: str,
        prompt: str,
        system_instruction: str | None = None,
        max_output_units: int = 8192,
        json_output: bool = False,
    ) -> GenerationResult:
        if not api_key:
            raise ProviderConfigError("No upstream credential supplied for the Gemini call")
        payload = build_payload(
            prompt=prompt,
            system_instruction=system_instruction,
            max_output_units=max_output_units,
            json_output=json_output,
        )
        client = self._get_client()
        breaker = await self._get_breaker()
        start = time.monotonic()
        try:
            await breaker.before_call()
        except IntegrationUnavailableError as exc:
            raise UpstreamProviderError(str(exc), kind="unavailable") from exc

        async def _call() -> httpx.Response:
            response = await client.post(
                f"/models/{model_key}:generateContent",
                json=payload,
                headers={"x-goog-api-key": api_key},
            )
            if response.status_code >= 500:
                # Provider-side errors go back through the retry policy on the same credential.
                response.raise_for_status()
            return response

        try:
            response = await retry_async(_call, policy=upstream_call_policy())
        except httpx.HTTPStatusError as exc:
            response = exc.response
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            await breaker.record_failure()
            self._record(start, success=False)
            logger.warning("gemini_timeout model=%s", model_key)
            raise UpstreamProviderError("Upstream provider timed out", kind="timeout") from exc
        except httpx.HTTPError as exc:
            await breaker.record_failure()
            self._record(start, success=False)
            logger.warning("gemini_transport_error model=%s", model_key, exc_info=exc)
            raise UpstreamProviderError("Upstream provider request failed", kind="unknown") from exc

        if response.status_code >= 400:
            # Credential-scoped failures (auth, quota) do not count against the shared breaker.
            if response.status_code >= 500:
                await breaker.record_failure()
            self._record(start, success=False)
            kind = _kind_for_status(response.status_code)
            logger.warning("gemini_error_status status=%s kind=%s model=%s", response.status_code, kind, model_key)
            raise UpstreamProviderError(
                f"Upstream provider error: {response.status_code}",
                kind=kind,
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as exc:
            await breaker.record_failure()
            self._record(start, success=False)
            raise UpstreamProviderError("Upstream provider returned invalid JSON", kind="unknown") from exc

        result = parse_response(body)
        await breaker.record_success()
        self._record(start, success=True)
        return result
