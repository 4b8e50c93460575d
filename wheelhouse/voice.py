"""Voice advisor plumbing: realtime session tokens and text-to-speech.

The browser negotiates its own peer connection with the vendor; the server
only brokers a short-lived client secret so the API key never leaves it.
"""
from __future__ import annotations

import logging
from typing import Any

import httpx

from wheelhouse.config import Settings, get_settings
from wheelhouse.llm import LLMCallError

log = logging.getLogger(__name__)


class VoiceClient:
    def __init__(self, settings: Settings | None = None, http: httpx.AsyncClient | None = None):
        self.settings = settings or get_settings()
        self._http = http

    def _headers(self) -> dict[str, str]:
        if not self.settings.openai_api_key:
            raise LLMCallError("OpenAI API key not configured")
        return {
            "Authorization": f"Bearer {self.settings.openai_api_key}",
            "Content-Type": "application/json",
        }

    async def _post(self, path: str, payload: dict[str, Any], extra_headers: dict[str, str] | None = None) -> httpx.Response:
        headers = {**self._headers(), **(extra_headers or {})}
        url = f"{self.settings.openai_base_url.rstrip('/')}{path}"
        try:
            if self._http is not None:
                resp = await self._http.post(url, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.settings.request_timeout_seconds) as client:
                    resp = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise LLMCallError(f"Voice API request failed: {exc}") from exc
        if resp.status_code >= 400:
            log.warning("Voice API %s returned %s: %s", path, resp.status_code, resp.text[:500])
            raise LLMCallError(f"Voice API {path} returned {resp.status_code}")
        return resp

    async def create_realtime_session(self) -> dict[str, Any]:
        """Create an ephemeral realtime session; returns the client secret and its expiry."""
        resp = await self._post(
            "/realtime/sessions",
            {"model": self.settings.realtime_model, "voice": self.settings.realtime_voice},
            extra_headers={"OpenAI-Beta": "realtime=v1"},
        )
        data = resp.json()
        secret = data.get("client_secret")
        expires_at = data.get("expires_at")
        if expires_at is None and isinstance(secret, dict):
            expires_at = secret.get("expires_at")
        return {"client_secret": secret, "expires_at": expires_at}

    async def synthesize_speech(self, text: str) -> bytes:
        """Render *text* to MP3 audio bytes."""
        resp = await self._post(
            "/audio/speech",
            {
                "model": self.settings.speech_model,
                "input": text[: self.settings.speech_max_chars],
                "voice": self.settings.speech_voice,
                "response_format": "mp3",
                "speed": 1.0,
            },
        )
        return resp.content
