"""HTTP adapters for the hosted generation and try-on functions."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping

import httpx
from google.auth import default as google_auth_default
from google.auth.transport.requests import Request

from ..workflow.errors import ProviderError
from .base import GenerationResult, TryOnOptions, TryOnResult


logger = logging.getLogger("guided-look")

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"


class GoogleBearerAuth:
    """Lazily resolves application default credentials into a bearer token."""

    def __init__(self) -> None:
        self._credentials: Any = None
        self._auth_request = Request()

    async def token(self) -> str:
        if self._credentials is None:
            credentials, _ = await asyncio.to_thread(google_auth_default, scopes=[CLOUD_PLATFORM_SCOPE])
            self._credentials = credentials
        if not self._credentials.valid:
            await asyncio.to_thread(self._credentials.refresh, self._auth_request)
        if not self._credentials.token:
            raise ProviderError("Unable to acquire an access token for the provider", status_code=501)
        return str(self._credentials.token)


class EdgeFunctionClient:
    def __init__(
        self,
        endpoint: str,
        *,
        timeout: float,
        auth: GoogleBearerAuth | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.timeout = timeout
        self.auth = auth
        self.transport = transport

    async def post(self, body: Mapping[str, Any]) -> dict[str, Any]:
        if not self.endpoint:
            raise ProviderError("Provider endpoint is not configured", status_code=501)
        headers = {"Content-Type": "application/json"}
        if self.auth is not None:
            headers["Authorization"] = f"Bearer {await self.auth.token()}"
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(self.endpoint, json=dict(body), headers=headers)
        if response.status_code >= 400:
            message = _error_text(response)
            logger.warning("Provider call to %s failed (%s): %s", self.endpoint, response.status_code, message)
            raise ProviderError(message, status_code=response.status_code)
        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError("Provider returned a non-JSON body") from exc
        return data if isinstance(data, dict) else {}


class EdgeGenerationProvider:
    name = "edge"

    def __init__(self, client: EdgeFunctionClient) -> None:
        self.client = client

    async def generate(self, prompt: str, hints: Mapping[str, Any]) -> GenerationResult:
        data = await self.client.post({"prompt": prompt, **dict(hints)})
        image_url = data.get("resultImage") or data.get("imageUrl") or data.get("image")
        if not image_url:
            return GenerationResult(success=False, error=str(data.get("error") or "Provider did not return image data"))
        return GenerationResult(success=True, image_url=str(image_url), metadata={"model": data.get("model")})


class EdgeTryOnProvider:
    name = "edge"

    def __init__(self, client: EdgeFunctionClient) -> None:
        self.client = client

    async def try_on(
        self,
        selfie_image: str,
        garment_slots: Mapping[str, str],
        options: TryOnOptions,
    ) -> TryOnResult:
        data = await self.client.post({"userImage": selfie_image, "slots": dict(garment_slots), **options.as_payload()})
        result_image = data.get("resultImage") or data.get("image")
        if not result_image:
            raise ProviderError(str(data.get("error") or "Provider did not return image data"))
        return TryOnResult(
            result_image=str(result_image),
            model=data.get("model"),
            slots_used=list(data.get("slotsUsed") or garment_slots.keys()),
        )


def _error_text(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(payload, dict):
        return str(payload.get("error") or payload.get("message") or payload.get("code") or response.reason_phrase)
    return response.text
