"""
Client for the call-control proxy endpoints.

Bridges agent actions to the backend without holding provider
credentials on the agent side. Every method is a single request with no
retries; retry policy belongs to the caller.
"""

import asyncio
import io
import os
import time
from typing import Any, BinaryIO, Dict, Optional, Union

import aiohttp

from dialer.config import settings
from dialer.errors import AuthenticationError, CallActionError, DialerError, UploadError
from dialer.utils.logging import LoggerMixin

MediaFile = Union[str, os.PathLike, bytes, BinaryIO]


def _read_file(path: Union[str, os.PathLike]) -> bytes:
    with open(path, "rb") as f:
        return f.read()


class CallSessionClient(LoggerMixin):
    """Token, call-action, upload and call-log requests against the backend."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: Optional[int] = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: Backend base URL (defaults to settings.backend_base_url)
            session: Optional externally owned aiohttp session
            timeout: Total request timeout in seconds
        """
        self.base_url = (base_url or settings.backend_base_url).rstrip("/")
        self.session = session
        self._owns_session = session is None
        self.timeout = aiohttp.ClientTimeout(total=timeout or settings.request_timeout)

    async def initialize(self):
        if self.session is None:
            self.session = aiohttp.ClientSession()
            self._owns_session = True

    async def close(self):
        if self.session is not None and self._owns_session:
            await self.session.close()
            self.session = None

    async def __aenter__(self) -> "CallSessionClient":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def _post(self, path: str, error_cls, operation: str, **kwargs) -> Any:
        """Issue a POST and return the decoded JSON body or raise error_cls."""
        if self.session is None:
            await self.initialize()

        start_time = time.time()
        try:
            async with self.session.post(self._url(path), timeout=self.timeout, **kwargs) as response:
                if not 200 <= response.status < 300:
                    details = await response.text()
                    raise error_cls(
                        f"{operation} failed with status {response.status}",
                        status_code=response.status,
                        details=details,
                    )
                data = await response.json(content_type=None)
        except DialerError as e:
            self.log_error(operation, e, status_code=e.status_code)
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            self.log_error(operation, e)
            raise error_cls(f"{operation} failed: {e}", details=str(e)) from e

        self.log_latency(operation, start_time)
        return data

    async def fetch_auth_token(self, line_id: Optional[str] = None) -> str:
        """
        Obtain a short-lived bearer token.

        Args:
            line_id: Optional outbound line (CLI number) to scope the token to

        Returns:
            Bearer token string

        Raises:
            AuthenticationError: On non-success status, network failure or
                a response without a token
        """
        body: Dict[str, Any] = {}
        if line_id:
            body["lineId"] = line_id

        data = await self._post(
            settings.auth_token_path, AuthenticationError, "fetch_auth_token", json=body
        )

        token = data.get("idToken") if isinstance(data, dict) else None
        if not token:
            error = data.get("error") if isinstance(data, dict) else None
            raise AuthenticationError(error or "No authentication token received", details=data)
        return token

    async def invoke_call_action(self, token: str, action: str, payload: Dict[str, Any]) -> Any:
        """
        Run a call-control action through the proxy.

        Args:
            token: Bearer token from fetch_auth_token
            action: Provider endpoint name, e.g. "initiate-call"
            payload: Action parameters

        Returns:
            Parsed response body

        Raises:
            CallActionError: On non-success status or network failure
        """
        self.logger.info("Invoking call action", action=action)
        return await self._post(
            settings.call_action_path,
            CallActionError,
            f"call_action_{action}",
            json={"token": token, "endpoint": action, "payload": payload},
        )

    async def upload_media(self, token: str, file: MediaFile, filename: Optional[str] = None) -> Any:
        """
        Upload one voice/media file as multipart form data.

        Args:
            token: Bearer token from fetch_auth_token
            file: Path, raw bytes or a binary file object
            filename: Name to send; derived from the path when omitted

        Returns:
            Parsed response body

        Raises:
            UploadError: On an unreadable path, non-success status or
                network failure
        """
        content: BinaryIO
        if isinstance(file, (str, os.PathLike)):
            filename = filename or os.path.basename(os.fspath(file))
            loop = asyncio.get_running_loop()
            try:
                data = await loop.run_in_executor(None, _read_file, file)
            except OSError as e:
                self.log_error("upload_media", e, filename=filename)
                raise UploadError(f"Cannot read {filename}: {e}", details=str(e)) from e
            content = io.BytesIO(data)
        elif isinstance(file, (bytes, bytearray)):
            content = io.BytesIO(bytes(file))
        else:
            content = file
            filename = filename or os.path.basename(getattr(file, "name", "") or "")

        form = aiohttp.FormData()
        form.add_field("file", content, filename=filename or "upload.bin")

        return await self._post(
            settings.upload_voice_path,
            UploadError,
            "upload_media",
            data=form,
            headers={"Authorization": f"Bearer {token}"},
        )

    async def log_call_event(
        self,
        reference_id: str,
        status: str,
        cli: Optional[str] = None,
        a_party: Optional[str] = None,
        b_party: Optional[str] = None,
    ) -> bool:
        """
        Record a lifecycle step in the call log. Best effort.

        Returns:
            True if the backend accepted the entry
        """
        try:
            await self._post(
                settings.call_logs_path,
                CallActionError,
                "log_call_event",
                json={
                    "referenceId": reference_id,
                    "cli": cli,
                    "aParty": a_party,
                    "bParty": b_party,
                    "status": status,
                },
            )
            return True
        except CallActionError as e:
            self.logger.warning("Call log not saved", reference_id=reference_id, status=status, error=str(e))
            return False
