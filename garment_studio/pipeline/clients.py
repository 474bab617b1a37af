"""
External Service Clients

One narrow httpx adapter per inference service. Each translates
pipeline-internal inputs into that service's request shape and its
response into plain values. Clients raise; stages turn errors into results.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from garment_studio.core.config import Settings
from garment_studio.core.exceptions import (
    ExternalAPIError,
    UpstreamTimeoutError,
    sanitize_error_text,
)
from garment_studio.core.logging import get_logger
from garment_studio.core.metrics import record_upstream_call
from garment_studio.pipeline.schemas import AsyncJobHandle, CutoutProfile

logger = get_logger(__name__)


class ServiceClient:
    """Shared request/error handling for an external HTTP service.

    A client constructed with an ``http`` instance reuses it (the caller owns
    its lifecycle); otherwise each call opens and closes its own client.
    """

    service: str = "service"
    display_name: str = "Service"

    def __init__(self, settings: Settings, http: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.http = http

    @asynccontextmanager
    async def _session(self, timeout: float) -> AsyncIterator[httpx.AsyncClient]:
        if self.http is not None:
            yield self.http
        else:
            async with httpx.AsyncClient(timeout=timeout) as client:
                yield client

    def _clean(self, text: str) -> str:
        return sanitize_error_text(text, self.settings.secrets())

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    @staticmethod
    def _error_text(response: httpx.Response) -> str:
        """Best human-readable error from a non-2xx response body."""
        try:
            body = response.json()
        except ValueError:
            return response.text[:500]
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict):
                parts = [str(error.get(key)) for key in ("status", "message") if error.get(key)]
                if parts:
                    return " - ".join(parts)
            if isinstance(error, str) and error:
                return error
            detail = body.get("detail")
            if detail:
                return detail if isinstance(detail, str) else str(detail)
        return response.text[:500]

    async def _send(
        self,
        method: str,
        url: str,
        json: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        timeout = timeout or self.settings.HTTP_TIMEOUT_SECONDS
        try:
            async with self._session(timeout) as client:
                response = await client.request(
                    method, url, json=json, headers=self._headers(), timeout=timeout
                )
        except httpx.TimeoutException:
            record_upstream_call(self.service, "timeout")
            raise UpstreamTimeoutError(
                f"{self.display_name} request timed out",
                service=self.service,
            )
        except httpx.HTTPError as e:
            record_upstream_call(self.service, "error")
            raise ExternalAPIError(
                self._clean(f"{self.display_name} request failed: {e}"),
                service=self.service,
            )

        if not response.is_success:
            record_upstream_call(self.service, "error")
            raise ExternalAPIError(
                self._clean(
                    f"{self.display_name} error {response.status_code}: {self._error_text(response)}"
                ),
                service=self.service,
                http_status=response.status_code,
            )

        record_upstream_call(self.service, "success")
        return response

    async def _send_json(
        self,
        method: str,
        url: str,
        json: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        response = await self._send(method, url, json=json, timeout=timeout)
        try:
            body = response.json()
        except ValueError:
            raise ExternalAPIError(
                f"{self.display_name} returned a non-JSON response",
                service=self.service,
                http_status=response.status_code,
            )
        if not isinstance(body, dict):
            raise ExternalAPIError(
                f"{self.display_name} returned an unexpected payload",
                service=self.service,
                http_status=response.status_code,
            )
        return body


# =============================================================================
# FAL endpoints (segmentation, harmonization, secondary edit)
# =============================================================================

class FalClient(ServiceClient):
    """Synchronous FAL model invocation: POST {FAL_BASE_URL}/{model}."""

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        if self.settings.FAL_KEY:
            headers["Authorization"] = f"Key {self.settings.FAL_KEY}"
        return headers

    async def invoke(self, model: str, body: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.settings.FAL_BASE_URL.rstrip('/')}/{model}"
        return await self._send_json("POST", url, json=body)

    @staticmethod
    def first_url(payload: Dict[str, Any], *paths: str) -> Optional[str]:
        """First non-empty URL among dotted paths such as ``images.0.url``."""
        for path in paths:
            node: Any = payload
            for key in path.split("."):
                if isinstance(node, list):
                    index = int(key) if key.isdigit() else None
                    node = node[index] if index is not None and index < len(node) else None
                elif isinstance(node, dict):
                    node = node.get(key)
                else:
                    node = None
                if node is None:
                    break
            if isinstance(node, str) and node:
                return node
        return None


class SegmentationClient(FalClient):
    service = "segmentation"
    display_name = "Segmentation service"
    model = "fal-ai/birefnet"

    async def remove_background(self, image_url: str, profile: CutoutProfile) -> Optional[str]:
        """Return the cutout PNG URL, or None when the response has none."""
        payload = await self.invoke(self.model, {
            "image_url": image_url,
            "model": profile.model_name,
        })
        return self.first_url(payload, "image.url", "output.url")


class HarmonizationClient(FalClient):
    service = "harmonization"
    display_name = "Harmonization service"
    model = "fal-ai/flux/dev/image-to-image"

    async def harmonize(
        self,
        image_url: str,
        prompt: str,
        strength: float,
        num_inference_steps: int,
    ) -> Optional[str]:
        payload = await self.invoke(self.model, {
            "image_url": image_url,
            "prompt": prompt,
            "strength": strength,
            "num_inference_steps": num_inference_steps,
        })
        return self.first_url(payload, "images.0.url", "image.url", "output.url")


class FalEditClient(FalClient):
    """Secondary generative edit provider (Nano Banana on FAL)."""

    service = "fal_edit"
    display_name = "FAL edit service"
    model = "fal-ai/nano-banana/edit"

    async def edit(self, prompt: str, image_data_url: str) -> Optional[str]:
        payload = await self.invoke(self.model, {
            "prompt": prompt,
            "image_urls": [image_data_url],
            "num_images": 1,
            "output_format": "png",
        })
        return self.first_url(payload, "images.0.url", "image.url")


# =============================================================================
# Gemini generative edit
# =============================================================================

class GeminiEditClient(ServiceClient):
    service = "gemini_edit"
    display_name = "Edit service"

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        if self.settings.GEMINI_API_KEY:
            headers["x-goog-api-key"] = self.settings.GEMINI_API_KEY
        return headers

    async def generate(self, prompt: str, image_b64: str, mime_type: str) -> Dict[str, Any]:
        """Raw generateContent response for [text, inline image] parts."""
        url = (
            f"{self.settings.GEMINI_BASE_URL.rstrip('/')}/models/"
            f"{self.settings.GEMINI_IMAGE_MODEL}:generateContent"
        )
        return await self._send_json("POST", url, json={
            "contents": [
                {
                    "parts": [
                        {"text": prompt},
                        {"inline_data": {"mime_type": mime_type, "data": image_b64}},
                    ]
                }
            ]
        })


# =============================================================================
# Replicate asynchronous predictions (upscale)
# =============================================================================

class UpscaleClient(ServiceClient):
    service = "upscale"
    display_name = "Upscale service"

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        if self.settings.REPLICATE_API_TOKEN:
            headers["Authorization"] = f"Token {self.settings.REPLICATE_API_TOKEN}"
        return headers

    async def submit(self, image_url: str, scale: int) -> AsyncJobHandle:
        payload = await self._send_json(
            "POST",
            f"{self.settings.REPLICATE_BASE_URL.rstrip('/')}/predictions",
            json={
                "version": self.settings.REPLICATE_UPSCALE_VERSION,
                "input": {
                    "image": image_url,
                    "scale": scale,
                    "face_enhance": False,
                },
            },
        )
        urls = payload.get("urls")
        poll_url = urls.get("get") if isinstance(urls, dict) else None
        if not poll_url or not isinstance(poll_url, str):
            raise ExternalAPIError(
                "Upscale service returned no status URL",
                service=self.service,
            )
        return AsyncJobHandle(job_id=str(payload.get("id") or ""), poll_url=poll_url)

    async def get_status(self, handle: AsyncJobHandle) -> Dict[str, Any]:
        return await self._send_json(
            "GET",
            handle.poll_url,
            timeout=self.settings.POLL_REQUEST_TIMEOUT_SECONDS,
        )
