"""
Tests for the call-control proxy client.
"""

import aiohttp
import pytest
from unittest.mock import AsyncMock, MagicMock

from dialer.client.session import CallSessionClient
from dialer.errors import AuthenticationError, CallActionError, UploadError


def make_session(status=200, json_body=None, text=""):
    """aiohttp-like session whose post() yields a canned response."""
    response = MagicMock()
    response.status = status
    response.json = AsyncMock(return_value=json_body)
    response.text = AsyncMock(return_value=text)

    session = MagicMock()
    session.post.return_value.__aenter__.return_value = response
    session.post.return_value.__aexit__.return_value = False
    return session


def make_client(session):
    return CallSessionClient(base_url="http://crm.test/api/", session=session)


@pytest.mark.asyncio
async def test_fetch_auth_token_returns_token():
    """A successful response yields the bearer token."""
    session = make_session(json_body={"idToken": "tok-123"})
    client = make_client(session)

    token = await client.fetch_auth_token("+911234")

    assert token == "tok-123"
    url = session.post.call_args.args[0]
    assert url == "http://crm.test/api/auth-token"
    assert session.post.call_args.kwargs["json"] == {"lineId": "+911234"}


@pytest.mark.asyncio
async def test_fetch_auth_token_without_line_sends_empty_body():
    """No line selector means no lineId in the request."""
    session = make_session(json_body={"idToken": "tok"})
    await make_client(session).fetch_auth_token()

    assert session.post.call_args.kwargs["json"] == {}


@pytest.mark.asyncio
async def test_fetch_auth_token_non_success_raises():
    """Non-2xx from the token endpoint is an AuthenticationError."""
    session = make_session(status=401, text="bad credentials")

    with pytest.raises(AuthenticationError) as exc_info:
        await make_client(session).fetch_auth_token()

    assert exc_info.value.status_code == 401
    assert exc_info.value.details == "bad credentials"


@pytest.mark.asyncio
async def test_fetch_auth_token_missing_token_raises():
    """A 200 without idToken is still an authentication failure."""
    session = make_session(json_body={"error": "Missing credentials configuration"})

    with pytest.raises(AuthenticationError, match="Missing credentials"):
        await make_client(session).fetch_auth_token()


@pytest.mark.asyncio
async def test_network_failure_is_classified():
    """Connection errors surface as the operation's error type."""
    session = MagicMock()
    session.post.side_effect = aiohttp.ClientConnectionError("refused")
    client = make_client(session)

    with pytest.raises(AuthenticationError):
        await client.fetch_auth_token()

    with pytest.raises(CallActionError):
        await client.invoke_call_action("tok", "AnswerCall", {"call_id": "1"})

    with pytest.raises(UploadError):
        await client.upload_media("tok", b"RIFF")


@pytest.mark.asyncio
async def test_invoke_call_action_forwards_request():
    """Token, action name and payload are sent to the proxy."""
    body = {"status": 1, "message": {"callid": 99}}
    session = make_session(json_body=body)

    result = await make_client(session).invoke_call_action(
        "tok", "initiate-call", {"cli": "+91", "bpartyno": "+1555"}
    )

    assert result == body
    assert session.post.call_args.args[0] == "http://crm.test/api/call-action"
    assert session.post.call_args.kwargs["json"] == {
        "token": "tok",
        "endpoint": "initiate-call",
        "payload": {"cli": "+91", "bpartyno": "+1555"},
    }


@pytest.mark.asyncio
async def test_invoke_call_action_failure_raises():
    """Non-2xx from the proxy is a CallActionError carrying the status."""
    session = make_session(status=502, text="upstream down")

    with pytest.raises(CallActionError) as exc_info:
        await make_client(session).invoke_call_action("tok", "HoldorResume", {"call_id": "1"})

    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
async def test_upload_media_sends_bearer_and_form(tmp_path):
    """Uploads are multipart with a bearer Authorization header."""
    voice = tmp_path / "hold-music.wav"
    voice.write_bytes(b"RIFF....WAVE")
    session = make_session(json_body={"status": "uploaded"})

    result = await make_client(session).upload_media("tok-9", voice)

    assert result == {"status": "uploaded"}
    kwargs = session.post.call_args.kwargs
    assert session.post.call_args.args[0] == "http://crm.test/api/upload-voice"
    assert kwargs["headers"] == {"Authorization": "Bearer tok-9"}
    assert isinstance(kwargs["data"], aiohttp.FormData)


@pytest.mark.asyncio
async def test_upload_media_missing_path_is_upload_error(tmp_path):
    """An unreadable file fails as an UploadError before any request."""
    session = make_session(json_body={"status": "uploaded"})

    with pytest.raises(UploadError, match="missing.wav"):
        await make_client(session).upload_media("tok", tmp_path / "missing.wav")

    session.post.assert_not_called()


@pytest.mark.asyncio
async def test_upload_media_failure_raises():
    """Non-2xx from the upload endpoint is an UploadError."""
    session = make_session(status=413, text="too large")

    with pytest.raises(UploadError) as exc_info:
        await make_client(session).upload_media("tok", b"data", filename="big.mp3")

    assert exc_info.value.status_code == 413


@pytest.mark.asyncio
async def test_log_call_event_is_best_effort():
    """Call-log failures are reported as False, not raised."""
    ok_client = make_client(make_session(json_body={"message": "Call log saved/updated"}))
    failing_client = make_client(make_session(status=500, text="db down"))

    assert await ok_client.log_call_event("ref_1", "initiated", cli="+91") is True
    assert await failing_client.log_call_event("ref_1", "initiated") is False


@pytest.mark.asyncio
async def test_injected_session_is_not_closed():
    """The client only closes sessions it created."""
    session = make_session(json_body={"idToken": "tok"})
    session.close = AsyncMock()

    async with make_client(session) as client:
        await client.fetch_auth_token()

    session.close.assert_not_awaited()
