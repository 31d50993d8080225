"""
Tests for the HTTP message store and the store factory.
Run with: pytest tests/test_store_http.py
"""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

import httpx

from farmline.errors import (
    MethodNotSupportedError,
    ServerError,
    TransientNetworkError,
    ValidationError,
)
from farmline.store import make_store
from farmline.store.http import HttpMessageStore
from farmline.store.memory import MemoryMessageStore
from farmline.store.retry import RetryingMessageStore


def _response(status=200, payload=None, content=b"x"):
    resp = MagicMock()
    resp.status_code = status
    resp.content = content if payload is not None or status >= 400 else b""
    resp.json.return_value = payload
    resp.text = str(payload)
    return resp


def _patched_client(mock_client_cls, resp=None, side_effect=None):
    mock_client = AsyncMock()
    if side_effect is not None:
        mock_client.request.side_effect = side_effect
    else:
        mock_client.request.return_value = resp
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    mock_client_cls.return_value = mock_client
    return mock_client


RECORD = {
    "id_mensaje": 7,
    "id_remitente": 2,
    "id_destinatario": 1,
    "asunto": "Consulta",
    "mensaje": "¿Hay miel?",
    "fecha_envio": "2024-03-01T10:00:00Z",
    "leido": 0,
}


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_fetch_received_data_envelope():
    """{'data': [...]} is unwrapped and normalized."""
    store = HttpMessageStore(url="http://api.test/api/", token="tok")
    with patch("farmline.store.http.httpx.AsyncClient") as mock_client_cls:
        client = _patched_client(mock_client_cls, _response(payload={"success": True, "data": [RECORD]}))
        msgs = await store.fetch_received()

    assert [m.id for m in msgs] == [7]
    method, url = client.request.call_args.args
    assert method == "GET"
    assert url == "http://api.test/api/mensajes/recibidos"
    assert client.request.call_args.kwargs["headers"]["Authorization"] == "Bearer tok"


@pytest.mark.asyncio
async def test_fetch_conversation_conversacion_envelope():
    store = HttpMessageStore(url="http://api.test")
    with patch("farmline.store.http.httpx.AsyncClient") as mock_client_cls:
        client = _patched_client(mock_client_cls, _response(payload={"conversacion": [RECORD, "junk"]}))
        msgs = await store.fetch_conversation(2)

    assert len(msgs) == 1
    assert client.request.call_args.args[1].endswith("/mensajes/conversacion/2")


@pytest.mark.asyncio
async def test_fetch_sent_bare_list():
    store = HttpMessageStore(url="http://api.test")
    with patch("farmline.store.http.httpx.AsyncClient") as mock_client_cls:
        _patched_client(mock_client_cls, _response(payload=[RECORD]))
        msgs = await store.fetch_sent()
    assert msgs[0].body == "¿Hay miel?"


@pytest.mark.asyncio
async def test_count_unread():
    store = HttpMessageStore(url="http://api.test")
    with patch("farmline.store.http.httpx.AsyncClient") as mock_client_cls:
        _patched_client(mock_client_cls, _response(payload={"success": True, "total_no_leidos": 3}))
        assert await store.count_unread() == 3


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_timeout_is_transient():
    store = HttpMessageStore(url="http://api.test", timeout=1)
    with patch("farmline.store.http.httpx.AsyncClient") as mock_client_cls:
        _patched_client(mock_client_cls, side_effect=httpx.TimeoutException("timed out"))
        with pytest.raises(TransientNetworkError):
            await store.fetch_received()


@pytest.mark.asyncio
async def test_connect_error_is_transient():
    store = HttpMessageStore(url="http://api.test")
    with patch("farmline.store.http.httpx.AsyncClient") as mock_client_cls:
        _patched_client(mock_client_cls, side_effect=httpx.ConnectError("refused"))
        with pytest.raises(TransientNetworkError):
            await store.fetch_sent()


@pytest.mark.asyncio
async def test_405_is_method_not_supported():
    """405 maps to its own type, which is hidden from the user."""
    store = HttpMessageStore(url="http://api.test")
    with patch("farmline.store.http.httpx.AsyncClient") as mock_client_cls:
        _patched_client(mock_client_cls, _response(status=405, payload={}))
        with pytest.raises(MethodNotSupportedError) as exc:
            await store.fetch_conversation(2)
    assert exc.value.user_visible is False


@pytest.mark.asyncio
async def test_server_error_carries_status_and_detail():
    store = HttpMessageStore(url="http://api.test")
    with patch("farmline.store.http.httpx.AsyncClient") as mock_client_cls:
        _patched_client(mock_client_cls, _response(status=500, payload={"message": "db down"}))
        with pytest.raises(ServerError) as exc:
            await store.mark_read(7)
    assert exc.value.status_code == 500
    assert "db down" in str(exc.value)


@pytest.mark.asyncio
async def test_success_false_is_server_error():
    store = HttpMessageStore(url="http://api.test")
    with patch("farmline.store.http.httpx.AsyncClient") as mock_client_cls:
        _patched_client(mock_client_cls, _response(payload={"success": False, "message": "No autorizado"}))
        with pytest.raises(ServerError, match="No autorizado"):
            await store.delete(7)


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_send_empty_body_makes_no_request():
    store = HttpMessageStore(url="http://api.test")
    with patch("farmline.store.http.httpx.AsyncClient") as mock_client_cls:
        with pytest.raises(ValidationError):
            await store.send(2, "   ")
    mock_client_cls.assert_not_called()


@pytest.mark.asyncio
async def test_send_payload_and_echo():
    """send posts the wire payload and normalizes the echoed record."""
    store = HttpMessageStore(url="http://api.test")
    echo = dict(RECORD, id_mensaje=50, id_remitente=1, id_destinatario=2, mensaje="hola")
    with patch("farmline.store.http.httpx.AsyncClient") as mock_client_cls:
        client = _patched_client(mock_client_cls, _response(payload={"success": True, "data": echo}))
        record = await store.send(2, "hola", subject="Re: Consulta", linked_product_id=11)

    assert record.id == 50
    payload = client.request.call_args.kwargs["json"]
    assert payload == {
        "id_destinatario": 2,
        "asunto": "Re: Consulta",
        "mensaje": "hola",
        "tipo_mensaje": "consulta",
        "id_producto": 11,
    }


@pytest.mark.asyncio
async def test_send_without_echo_returns_none():
    store = HttpMessageStore(url="http://api.test")
    with patch("farmline.store.http.httpx.AsyncClient") as mock_client_cls:
        _patched_client(mock_client_cls, _response(payload={"success": True, "message": "Mensaje enviado"}))
        assert await store.send(2, "hola") is None


@pytest.mark.asyncio
async def test_contact_producer_is_unauthenticated():
    store = HttpMessageStore(url="http://api.test", token="tok")
    with patch("farmline.store.http.httpx.AsyncClient") as mock_client_cls:
        client = _patched_client(mock_client_cls, _response(payload={"success": True}))
        await store.contact_producer(11, "Luis", "luis@example.com", "¿Precio por kilo?")

    kwargs = client.request.call_args.kwargs
    assert "Authorization" not in kwargs["headers"]
    assert kwargs["json"]["id_producto"] == 11
    assert kwargs["json"]["email_contacto"] == "luis@example.com"


# ---------------------------------------------------------------------------
# make_store
# ---------------------------------------------------------------------------

def test_make_store_http_wrapped_with_retry():
    store = make_store({"api": {"provider": "http", "url": "http://api.test"}})
    assert isinstance(store, RetryingMessageStore)
    assert isinstance(store.store, HttpMessageStore)


def test_make_store_without_retries():
    store = make_store({"api": {"provider": "memory"}, "retry": {"max_retries": 0}}, user_id=1)
    assert isinstance(store, MemoryMessageStore)


def test_make_store_http_requires_url():
    with pytest.raises(ValueError):
        make_store({"api": {"provider": "http", "url": ""}})


def test_make_store_unknown_provider():
    with pytest.raises(ValueError, match="Unknown"):
        make_store({"api": {"provider": "carrier-pigeon"}})
