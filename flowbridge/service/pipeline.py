from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from flowbridge.logging import get_logger
from flowbridge.service.errors import UpstreamError
from flowbridge.storage.models import ConversationMessage, RemoteWorkflowConfig

logger = get_logger(__name__)

SYSTEM_INSTRUCTION = "You are a helpful WhatsApp assistant. Be concise and helpful."
STATIC_REPLY = (
    "I'm currently experiencing technical difficulties. "
    "Please try again later or contact support if the issue persists."
)
FALLBACK_HISTORY_TURNS = 5
FALLBACK_TEMPERATURE = 0.7
_FALLBACK_REPLY_FIELDS = ("text", "message", "content")

_DUPLICATE_SLASHES = re.compile(r"([^:]/)/+")


def join_url(base_url: str, path: str) -> str:
    """Join ``base_url`` and ``path`` with one slash, leaving ``scheme://`` intact."""
    return _DUPLICATE_SLASHES.sub(r"\1", f"{base_url}/{path}")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ResponsePipeline:
    """Produce a reply through a three-tier chain that always yields text.

    1. The instance's remote workflow webhook, which must answer with a
       non-empty ``output`` field.
    2. The optional fallback-model webhook, fed a short prompt built from the
       most recent conversation turns.
    3. A fixed apology string.

    Each tier is attempted once per message.
    """

    def __init__(
        self,
        *,
        fallback_model: str = "gpt-4",
        probe_timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.fallback_model = fallback_model
        self.probe_timeout = probe_timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                transport=self._transport,
                headers={"Accept": "application/json"},
            )
        return self._client

    @staticmethod
    def _headers(config: RemoteWorkflowConfig) -> Dict[str, str]:
        if config.api_key:
            return {"X-N8N-Api-Key": config.api_key}
        return {}

    async def _post(
        self, config: RemoteWorkflowConfig, path: str, body: Dict[str, Any]
    ) -> Dict[str, Any]:
        client = await self._get_client()
        try:
            response = await client.post(
                join_url(config.base_url, path),
                json=body,
                headers=self._headers(config),
                timeout=config.timeout / 1000.0,
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            raise UpstreamError(
                f"workflow returned HTTP {exc.response.status_code}",
                detail={"status_code": exc.response.status_code},
            ) from exc
        except httpx.TimeoutException as exc:
            raise UpstreamError("workflow request timed out") from exc
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise UpstreamError(f"workflow request failed: {exc}") from exc
        except ValueError as exc:
            raise UpstreamError("workflow returned malformed JSON") from exc
        if not isinstance(data, dict):
            raise UpstreamError("workflow returned an unexpected payload")
        return data

    async def call_workflow(
        self, config: RemoteWorkflowConfig, payload: Dict[str, Any]
    ) -> str:
        data = await self._post(config, config.webhook_path, payload)
        output = data.get("output")
        if not isinstance(output, str) or not output.strip():
            raise UpstreamError("workflow response has no output")
        return output

    def build_fallback_prompt(
        self, message: str, history: List[ConversationMessage]
    ) -> List[Dict[str, str]]:
        prompt = [{"role": "system", "content": SYSTEM_INSTRUCTION}]
        for entry in history[-FALLBACK_HISTORY_TURNS:]:
            prompt.append({"role": entry.role, "content": entry.content})
        prompt.append({"role": "user", "content": message})
        return prompt

    async def call_fallback(
        self,
        config: RemoteWorkflowConfig,
        instance_id: str,
        message: str,
        history: List[ConversationMessage],
    ) -> str:
        if not config.fallback_path:
            raise UpstreamError("no fallback path configured")
        body = {
            "model": self.fallback_model,
            "prompt": json.dumps(self.build_fallback_prompt(message, history)),
            "options": {"temperature": FALLBACK_TEMPERATURE},
            "instanceId": instance_id,
        }
        data = await self._post(config, config.fallback_path, body)
        for key in _FALLBACK_REPLY_FIELDS:
            value = data.get(key)
            if isinstance(value, str) and value:
                return value
        raise UpstreamError("fallback response has no text")

    async def respond(
        self,
        config: RemoteWorkflowConfig,
        payload: Dict[str, Any],
        history: List[ConversationMessage],
    ) -> str:
        """Return a reply for ``payload``; never raises for upstream failures."""
        instance_id = payload.get("instanceId", "")
        try:
            return await self.call_workflow(config, payload)
        except UpstreamError as exc:
            logger.warning(
                "workflow_primary_failed", instance_id=instance_id, error=exc.message
            )
        try:
            return await self.call_fallback(
                config, instance_id, payload.get("message", ""), history
            )
        except UpstreamError as exc:
            logger.error(
                "workflow_fallback_failed", instance_id=instance_id, error=exc.message
            )
        return STATIC_REPLY

    async def probe(self, base_url: str, api_key: Optional[str] = None) -> bool:
        """GET ``base_url``; reachable means any 2xx within the probe timeout."""
        client = await self._get_client()
        headers = {"X-N8N-Api-Key": api_key} if api_key else {}
        try:
            response = await client.get(
                base_url, headers=headers, timeout=self.probe_timeout
            )
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.warning("workflow_probe_failed", base_url=base_url, error=str(exc))
            return False
        if not response.is_success:
            logger.warning(
                "workflow_probe_failed",
                base_url=base_url,
                status_code=response.status_code,
            )
            return False
        return True

    async def health(self, config: RemoteWorkflowConfig) -> Dict[str, str]:
        client = await self._get_client()
        try:
            response = await client.get(
                config.base_url, headers=self._headers(config), timeout=self.probe_timeout
            )
            response.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            return {
                "status": "error",
                "message": f"workflow health check failed: {exc}",
                "timestamp": _now_iso(),
            }
        return {
            "status": "ok",
            "message": "workflow engine is accessible",
            "timestamp": _now_iso(),
        }

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
