from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from paperpulse.domain.errors import ExternalServiceError
from paperpulse.infrastructure.api_clients import base
from paperpulse.infrastructure.api_clients.base import APIClient


def _response(status, body=None, headers=None):
    response = AsyncMock()
    response.status = status
    response.headers = headers or {}
    response.json = AsyncMock(return_value=body or {})
    response.text = AsyncMock(return_value="error body")
    response.read = AsyncMock(return_value=b"")
    return AsyncMock(__aenter__=AsyncMock(return_value=response), __aexit__=AsyncMock(return_value=False))


@pytest.fixture
def client():
    return APIClient("https://api.example/", request_interval=0, max_retries=2)


@pytest.fixture(autouse=True)
def _no_sleep(monkeypatch):
    sleep = AsyncMock()
    monkeypatch.setattr(base.asyncio, "sleep", sleep)
    return sleep


@pytest.mark.asyncio
async def test_retries_server_errors_then_succeeds(client, _no_sleep):
    with patch.object(client, "_get_session") as mock_session:
        mock_session.return_value.request = MagicMock(
            side_effect=[_response(503), _response(429, headers={"Retry-After": "3"}), _response(200, {"ok": True})]
        )
        result = await client.get("/search", {"q": "x"})

    assert result == {"ok": True}
    assert mock_session.return_value.request.call_count == 3
    first_call = mock_session.return_value.request.call_args_list[0]
    assert first_call.args == ("GET", "https://api.example/search")
    # Retry-After is honoured on the second failure
    assert _no_sleep.await_args_list[-1].args == (3.0,)


@pytest.mark.asyncio
async def test_gives_up_after_max_retries(client):
    with patch.object(client, "_get_session") as mock_session:
        mock_session.return_value.request = MagicMock(side_effect=[_response(502) for _ in range(3)])
        with pytest.raises(ExternalServiceError) as info:
            await client.get("/search")

    assert info.value.status == 502


@pytest.mark.asyncio
async def test_not_found_is_empty_and_client_errors_raise(client):
    with patch.object(client, "_get_session") as mock_session:
        mock_session.return_value.request = MagicMock(side_effect=[_response(404), _response(400)])
        assert await client.get("/missing") == {}
        with pytest.raises(ExternalServiceError):
            await client.post("/bad", {"x": 1})


def test_backoff_bounds():
    assert base._backoff(0, "120") == 30.0
    assert 1.0 <= base._backoff(0, None) <= 2.5
    assert 6.0 <= base._backoff(2, "soon") <= 10.0
