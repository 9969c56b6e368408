"""Model client — OpenAI-compatible ``/chat/completions`` over httpx.

Every failure surfaces as :class:`ModelInvocationError` whose message
names the transport problem only.  The API key lives in the request
headers and is never logged or echoed into error text.

There are no internal retries: a failed call is reported to the stage
that made it, which records it as a failed attempt.
"""

from __future__ import annotations

import logging
import time

import httpx

from agents.base import ModelInvoker, ModelResponse
from services.config import Settings
from shared.determinism import GENERATION_ROLE, HEALING_ROLE, TOP_P_BY_ROLE
from shared.errors import ModelInvocationError

logger = logging.getLogger(__name__)


class ModelClient(ModelInvoker):
    """Thin async wrapper around a chat-completions endpoint.

    Usage::

        client = ModelClient(api_base, api_key, {"generation": "gemini-2.0-flash"})
        response = await client.invoke("generation", system, user, 4096, 0.2)
    """

    def __init__(
        self,
        api_base: str,
        api_key: str,
        models: dict[str, str],
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_base = api_base.rstrip("/")
        self._api_key = api_key
        self.models = models
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> ModelClient:
        return cls(
            api_base=settings.MODEL_API_BASE,
            api_key=settings.MODEL_API_KEY,
            models={
                GENERATION_ROLE: settings.GENERATION_MODEL,
                HEALING_ROLE: settings.HEALING_MODEL,
            },
            timeout=settings.MODEL_TIMEOUT,
        )

    async def invoke(
        self,
        role: str,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int,
        temperature: float,
    ) -> ModelResponse:
        model = self.models.get(role)
        if not model:
            raise ModelInvocationError(role, f"no model configured for role '{role}'")
        if not self._api_key:
            raise ModelInvocationError(role, "no API key configured")

        payload = {
            "model": model,
            "temperature": temperature,
            "top_p": TOP_P_BY_ROLE.get(role, 1.0),
            "max_tokens": max_tokens,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }

        started = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(
                    f"{self.api_base}/chat/completions",
                    headers={
                        "Authorization": f"Bearer {self._api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
                resp.raise_for_status()
                data = resp.json()
        except httpx.TimeoutException as exc:
            raise ModelInvocationError(role, f"request timed out after {self.timeout:g}s") from exc
        except httpx.HTTPStatusError as exc:
            code = exc.response.status_code
            logger.error("Model %s returned HTTP %d for role %s", model, code, role)
            raise ModelInvocationError(role, f"HTTP {code} from model endpoint", code) from exc
        except httpx.HTTPError as exc:
            raise ModelInvocationError(role, f"transport error ({type(exc).__name__})") from exc
        except ValueError as exc:
            raise ModelInvocationError(role, "response body is not valid JSON") from exc

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ModelInvocationError(role, "malformed completion payload") from exc
        if not isinstance(content, str) or not content.strip():
            raise ModelInvocationError(role, "empty completion")

        latency_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Model %s (%s) returned %d chars in %d ms",
            model, role, len(content), latency_ms,
        )
        return ModelResponse(text=content, latency_ms=latency_ms)

    def __repr__(self) -> str:
        return f"<ModelClient base={self.api_base} models={self.models}>"
