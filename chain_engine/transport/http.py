"""
httpx-backed Transport.
"""

import logging
import time
from typing import Any, Optional

import httpx

from chain_engine.config.settings import HttpSettings, get_settings
from chain_engine.core.models import RequestDescriptor, Response

logger = logging.getLogger(__name__)


class HttpxTransport:
    """
    Sends RequestDescriptors through an ``httpx.AsyncClient``.

    JSON response bodies are decoded; other text is returned as ``str``
    and binary content as ``bytes``. Transport errors propagate to the
    caller, which records them as item failures.
    """

    def __init__(
        self,
        settings: Optional[HttpSettings] = None,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings().http
        self._transport = transport
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.settings.base_url,
                timeout=self.settings.timeout,
                verify=self.settings.verify,
                follow_redirects=self.settings.follow_redirects,
                limits=httpx.Limits(max_connections=self.settings.max_connections),
                transport=self._transport,
            )
        return self._client

    async def send(self, request: RequestDescriptor) -> Response:
        kwargs: dict[str, Any] = {}
        if isinstance(request.body, (str, bytes)):
            kwargs["content"] = request.body
        elif request.body is not None:
            kwargs["json"] = request.body
        if request.timeout is not None:
            kwargs["timeout"] = request.timeout

        started = time.perf_counter()
        http_response = await self.client.request(
            request.method,
            request.url,
            params=request.params or None,
            headers=request.headers or None,
            **kwargs,
        )
        duration = (time.perf_counter() - started) * 1000

        logger.debug(f"{request.method} {request.url} -> {http_response.status_code} ({duration:.0f}ms)")

        return Response(
            status=http_response.status_code,
            headers=dict(http_response.headers),
            body=self._decode_body(http_response),
            duration=duration,
            url=str(http_response.url),
        )

    @staticmethod
    def _decode_body(http_response: httpx.Response) -> Any:
        if not http_response.content:
            return None

        content_type = http_response.headers.get("content-type", "")
        if "json" in content_type:
            try:
                return http_response.json()
            except ValueError:
                return http_response.text
        if content_type.startswith("text/") or "xml" in content_type:
            return http_response.text
        return http_response.content

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "HttpxTransport":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
