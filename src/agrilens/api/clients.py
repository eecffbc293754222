"""Async clients for the generative-text and geospatial backends.

Both backends are opaque HTTP services. Failures are mapped onto the
defense error taxonomy:

- timeouts become ``OPERATION_TIMED_OUT``
- connection failures become ``EXTERNAL_SERVICE_FAILURE`` (``unavailable``)
- non-2xx answers and unreadable bodies become
  ``EXTERNAL_SERVICE_FAILURE`` (``rejected``) with the upstream status
"""

from __future__ import annotations

import json
from typing import Any

import httpx

from agrilens.logging import get_logger
from agrilens.security import errors

log = get_logger("agrilens.api.clients")


class BackendClient:
    """Shared request handling for one upstream service."""

    service_name = "backend"

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the client.

        Args:
            base_url: Base URL of the service.
            timeout: Request timeout in seconds.
            headers: Headers sent with every request.
            transport: Custom transport (tests use ``httpx.MockTransport``).
        """
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._headers = headers or {}
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

        log.info(f"{self.service_name}_client_initialized", base_url=self._base_url)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=self._headers,
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
            log.debug(f"{self.service_name}_client_closed")

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        """Send a request and return the decoded JSON body.

        Raises:
            DefenseError: On timeout, connection failure or non-2xx answer.
        """
        client = await self._get_client()
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            log.warning(f"{self.service_name}_timeout", path=path, timeout=self._timeout)
            raise errors.operation_timed_out(self.service_name, self._timeout) from e
        except httpx.RequestError as e:
            log.warning(f"{self.service_name}_unavailable", path=path, error=str(e))
            raise errors.external_service_failure(
                self.service_name, reason="unavailable", cause=type(e).__name__
            ) from e

        if response.is_error:
            log.warning(
                f"{self.service_name}_rejected",
                path=path,
                status=response.status_code,
            )
            raise errors.external_service_failure(
                self.service_name,
                reason="rejected",
                upstream_status=response.status_code,
            )

        try:
            return response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise errors.external_service_failure(
                self.service_name,
                reason="rejected",
                upstream_status=response.status_code,
                cause="invalid JSON response",
            ) from e

    async def health_check(self) -> bool:
        """Check if the service answers its health endpoint."""
        try:
            client = await self._get_client()
            response = await client.get("/health")
            return response.status_code == 200
        except httpx.RequestError as e:
            log.warning(f"{self.service_name}_health_check_failed", error=str(e))
            return False


class GenerativeTextClient(BackendClient):
    """Client for a ``generateContent``-style text generation API."""

    service_name = "generative_text"

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        *,
        default_model: str = "gemini-1.5-flash",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        headers = {"x-goog-api-key": api_key} if api_key else {}
        super().__init__(base_url, timeout=timeout, headers=headers, transport=transport)
        self._default_model = default_model

    @staticmethod
    def build_request(prompt: str, context: dict[str, Any] | None = None) -> dict[str, Any]:
        text = prompt
        if context:
            text = f"{prompt}\n\nContext:\n{json.dumps(context, ensure_ascii=False)}"
        return {
            "contents": [{"role": "user", "parts": [{"text": text}]}],
            "generationConfig": {
                "temperature": 0.3,
                "topP": 0.8,
                "topK": 40,
                "maxOutputTokens": 8192,
            },
        }

    async def generate(
        self,
        prompt: str,
        *,
        model: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Generate advice for a prompt that already passed the detector.

        Returns:
            ``{"text": ..., "model": ...}``
        """
        model_name = model or self._default_model
        data = await self._request(
            "POST",
            f"/models/{model_name}:generateContent",
            json=self.build_request(prompt, context),
        )
        try:
            text = data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError) as e:
            raise errors.external_service_failure(
                self.service_name,
                reason="rejected",
                upstream_status=200,
                cause="response has no candidate text",
            ) from e
        return {"text": text, "model": model_name}


class GeospatialClient(BackendClient):
    """Client for the satellite vegetation-index analysis backend."""

    service_name = "geospatial"

    async def analyze(
        self, geometry: dict[str, Any], options: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        """Run an analysis over a validated area of interest."""
        payload: dict[str, Any] = {"aoiGeoJSON": geometry}
        if options:
            payload["options"] = options
        result: dict[str, Any] = await self._request("POST", "/analyze", json=payload)
        return result
