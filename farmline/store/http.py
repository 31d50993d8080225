"""
HTTP message store for the marketplace API.

Endpoints (all under the API base url, bearer auth):
  GET    /mensajes/recibidos
  GET    /mensajes/enviados
  GET    /mensajes/conversacion/{id_usuario}
  POST   /mensajes/enviar
  PUT    /mensajes/{id_mensaje}/leer
  DELETE /mensajes/{id_mensaje}
  GET    /mensajes/no-leidos
  POST   /mensajes/contactar-productor   (no auth)

List endpoints answer with {"data": [...]}, {"mensajes": [...]},
{"conversacion": [...]} or a bare list depending on the route and the
API version; all of them are accepted.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from farmline.errors import (
    MethodNotSupportedError,
    ServerError,
    TransientNetworkError,
    ValidationError,
)
from farmline.models import Message, normalize_message, normalize_messages
from farmline.store.base import MessageStore

logger = logging.getLogger(__name__)

_LIST_KEYS = ("data", "mensajes", "conversacion")


def _extract_list(payload: Any) -> list:
    """Pull the message array out of whichever envelope the route used."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in _LIST_KEYS:
            value = payload.get(key)
            if isinstance(value, list):
                return value
    return []


def _error_detail(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(data, dict):
        return str(data.get("message") or data.get("error") or "")[:200]
    return ""


class HttpMessageStore(MessageStore):
    """
    Message store backed by the marketplace REST API.
    One short-lived httpx.AsyncClient per call; transport failures become
    TransientNetworkError, HTTP failures become ServerError.
    """

    def __init__(self, url: str, token: str = "", timeout: float = 30, name: str = "api"):
        self.name = name
        self.url = url.rstrip("/")
        self.token = token
        self.timeout = timeout

    def _headers(self, auth: bool = True) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if auth and self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        json: dict | None = None,
        auth: bool = True,
    ) -> Any:
        """Issue one request and return the decoded JSON body (or None)."""
        t0 = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.request(
                    method,
                    f"{self.url}{path}",
                    json=json,
                    headers=self._headers(auth),
                )
        except httpx.TimeoutException as e:
            logger.warning("%s %s timed out after %.0fms", method, path, (time.monotonic() - t0) * 1000)
            raise TransientNetworkError(f"Timeout after {self.timeout}s: {method} {path}") from e
        except httpx.TransportError as e:
            logger.warning("%s %s failed: %s", method, path, e)
            raise TransientNetworkError(f"{method} {path}: {e}") from e

        latency = (time.monotonic() - t0) * 1000
        logger.debug("%s %s -> %d in %.0fms", method, path, resp.status_code, latency)

        if resp.status_code == 405:
            raise MethodNotSupportedError(f"{method} {path} is not available on this API (HTTP 405)")
        if resp.status_code >= 400:
            detail = _error_detail(resp)
            raise ServerError(f"HTTP {resp.status_code}: {detail}", status_code=resp.status_code)

        if not resp.content:
            return None
        try:
            data = resp.json()
        except ValueError as e:
            raise ServerError(f"Invalid JSON from {method} {path}", status_code=resp.status_code) from e

        if isinstance(data, dict) and data.get("success") is False:
            detail = str(data.get("message") or data.get("error") or "request failed")
            raise ServerError(detail, status_code=resp.status_code)
        return data

    # ── Reads ────────────────────────────────────────────────────────────────

    async def fetch_received(self) -> list[Message]:
        data = await self._request("GET", "/mensajes/recibidos")
        return normalize_messages(_extract_list(data))

    async def fetch_sent(self) -> list[Message]:
        data = await self._request("GET", "/mensajes/enviados")
        return normalize_messages(_extract_list(data))

    async def fetch_conversation(self, peer_id: int) -> list[Message]:
        data = await self._request("GET", f"/mensajes/conversacion/{peer_id}")
        return normalize_messages(_extract_list(data))

    async def count_unread(self) -> int:
        data = await self._request("GET", "/mensajes/no-leidos")
        if not isinstance(data, dict):
            return 0
        total = data.get("total_no_leidos")
        if total is None and isinstance(data.get("data"), dict):
            total = data["data"].get("total_no_leidos")
        try:
            return max(int(total or 0), 0)
        except (TypeError, ValueError):
            return 0

    # ── Writes ───────────────────────────────────────────────────────────────

    async def send(
        self,
        peer_id: int,
        body: str,
        subject: str | None = None,
        linked_product_id: int | None = None,
        kind: str | None = None,
    ) -> Message | None:
        if not body or not body.strip():
            raise ValidationError("Message body is empty")
        payload: dict[str, Any] = {
            "id_destinatario": peer_id,
            "asunto": subject or "Consulta",
            "mensaje": body,
            "tipo_mensaje": kind or ("consulta" if linked_product_id else "general"),
        }
        if linked_product_id is not None:
            payload["id_producto"] = linked_product_id

        data = await self._request("POST", "/mensajes/enviar", json=payload)
        record = None
        if isinstance(data, dict):
            record = normalize_message(data.get("data") or data.get("mensaje"))
        if record is not None and record.id is None:
            return None
        return record

    async def mark_read(self, message_id: int) -> None:
        await self._request("PUT", f"/mensajes/{message_id}/leer", json={})

    async def delete(self, message_id: int) -> None:
        await self._request("DELETE", f"/mensajes/{message_id}")

    async def contact_producer(
        self,
        product_id: int,
        name: str,
        email: str,
        body: str,
        phone: str | None = None,
    ) -> None:
        """Anonymous enquiry about a product, routed by the API to its producer."""
        if not body or not body.strip():
            raise ValidationError("Message body is empty")
        if not name.strip() or not email.strip():
            raise ValidationError("Name and email are required")
        payload: dict[str, Any] = {
            "id_producto": product_id,
            "nombre_contacto": name,
            "email_contacto": email,
            "mensaje": body,
        }
        if phone:
            payload["telefono_contacto"] = phone
        await self._request("POST", "/mensajes/contactar-productor", json=payload, auth=False)
