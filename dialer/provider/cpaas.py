"""
CPaaS click-to-call provider implementation.
"""

import asyncio
import json
import time
from typing import Any, Dict, Optional

import aiohttp

from dialer.config import settings
from dialer.errors import ProviderError
from dialer.provider.base import CallControlProvider, ProviderResponse


class CpaasProvider(CallControlProvider):
    """Click-to-call over the operator's CPaaS REST API."""

    UPLOAD_ENDPOINT = "uploadvoice"

    def __init__(self, base_url: Optional[str] = None, **kwargs):
        super().__init__(base_url or settings.cpaas_base_url, **kwargs)
        self.session: Optional[aiohttp.ClientSession] = None
        self.timeout = aiohttp.ClientTimeout(total=kwargs.get("timeout", settings.request_timeout))

    async def _initialize(self):
        self.session = aiohttp.ClientSession()

    async def _request(self, endpoint: str, **kwargs) -> ProviderResponse:
        await self.initialize()
        url = f"{self.base_url}/{endpoint}"
        start_time = time.time()

        try:
            async with self.session.post(url, timeout=self.timeout, **kwargs) as response:
                text = await response.text()
                status = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.log_error("cpaas_request", e, endpoint=endpoint)
            raise ProviderError(f"Provider request to {endpoint} failed: {e}") from e

        try:
            body = json.loads(text) if text else None
        except ValueError:
            body = None

        if not 200 <= status < 300:
            self.logger.error(
                "Provider returned an error",
                endpoint=endpoint,
                status_code=status,
                response_body=text,
            )
        else:
            self.log_latency("cpaas_request", start_time, endpoint=endpoint)

        return ProviderResponse(status_code=status, body=body, text=text)

    async def issue_token(self, username: str, password: str) -> ProviderResponse:
        return await self._request(
            self.AUTH_ENDPOINT,
            json={"username": username, "password": password},
        )

    async def call_endpoint(
        self,
        endpoint: str,
        payload: Dict[str, Any],
        token: Optional[str] = None,
    ) -> ProviderResponse:
        headers = {}
        if endpoint != self.AUTH_ENDPOINT:
            headers["Authorization"] = f"Bearer {token}"
        return await self._request(endpoint, json=payload, headers=headers)

    async def upload_voice(
        self,
        token: str,
        filename: str,
        content: bytes,
        content_type: Optional[str] = None,
    ) -> ProviderResponse:
        form = aiohttp.FormData()
        form.add_field("file", content, filename=filename, content_type=content_type)

        # The agent side already sends "Bearer <token>"
        authorization = token if token.lower().startswith("bearer ") else f"Bearer {token}"
        return await self._request(
            self.UPLOAD_ENDPOINT,
            data=form,
            headers={"Authorization": authorization},
        )

    async def _close(self):
        if self.session:
            await self.session.close()
            self.session = None
