from __future__ import annotations

"""Transport contract consumed by the core and its HTTP implementation.

The core only depends on :class:`ChatTransport`.  :class:`HttpTransport`
speaks the REST API served by :mod:`chatsync.server` (or any backend with the
same routes) and turns every failure into :class:`~chatsync.errors.TransportError`
so callers never see aiohttp exceptions.
"""

import asyncio
import logging
from typing import Any, Iterable, Protocol

import aiohttp
from pydantic import ValidationError

from .errors import TransportError
from .models import ChannelKind, MessagePage

logger = logging.getLogger(__name__)


class ChatTransport(Protocol):
    async def fetch_channels(self) -> list[dict[str, Any]]: ...

    async def fetch_messages(
        self, channel_id: str, limit: int, cursor: str | None = None
    ) -> MessagePage: ...

    async def send_message(
        self, channel_id: str, content: str, nonce: str | None = None
    ) -> dict[str, Any]: ...

    async def create_channel(
        self,
        kind: ChannelKind,
        name: str | None = None,
        member_ids: Iterable[str] = (),
        description: str | None = None,
        is_private: bool = False,
    ) -> dict[str, Any]: ...

    async def add_members(self, channel_id: str, member_ids: Iterable[str]) -> None: ...


class HttpTransport:
    def __init__(
        self,
        base_url: str,
        *,
        user_id: str,
        timeout_s: float = 10.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.base_url = base_url.strip().rstrip("/")
        self.user_id = user_id
        self.timeout_s = timeout_s
        self._session = session
        self._owns_session = session is None

    @property
    def _headers(self) -> dict[str, str]:
        return {"Accept": "application/json", "X-User-Id": self.user_id}

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_s)
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        session = self._get_session()
        url = f"{self.base_url}{path}"
        try:
            async with session.request(
                method, url, params=params, json=json, headers=self._headers
            ) as resp:
                if resp.status >= 400:
                    try:
                        detail = (await resp.text(errors="replace"))[:240]
                    except (aiohttp.ClientError, ValueError):
                        detail = ""
                    logger.info(
                        "chat.http error method=%s path=%s status=%s",
                        method,
                        path,
                        resp.status,
                    )
                    raise TransportError(
                        f"{method} {path} failed: HTTP {resp.status} {detail}".rstrip(),
                        status=resp.status,
                    )
                if resp.status == 204:
                    return None
                try:
                    return await resp.json()
                except (aiohttp.ContentTypeError, ValueError) as exc:
                    raise TransportError(
                        f"{method} {path} returned a non-JSON body",
                        status=resp.status,
                    ) from exc
        except TransportError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.info("chat.http unreachable method=%s path=%s error=%s", method, path, exc)
            raise TransportError(f"{method} {path} failed: {exc!r}") from exc

    async def fetch_channels(self) -> list[dict[str, Any]]:
        payload = await self._request("GET", "/api/chat/channels")
        if not isinstance(payload, list):
            raise TransportError("channel list payload is not a list", status=200)
        return payload

    async def fetch_messages(
        self, channel_id: str, limit: int, cursor: str | None = None
    ) -> MessagePage:
        params: dict[str, Any] = {"limit": limit}
        if cursor:
            params["cursor"] = cursor
        payload = await self._request(
            "GET", f"/api/chat/channels/{channel_id}/messages", params=params
        )
        if isinstance(payload, list):
            return MessagePage(messages=payload)
        try:
            return MessagePage.model_validate(payload)
        except ValidationError as exc:
            raise TransportError("message page payload is malformed", status=200) from exc

    async def send_message(
        self, channel_id: str, content: str, nonce: str | None = None
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"content": content}
        if nonce:
            body["nonce"] = nonce
        payload = await self._request(
            "POST", f"/api/chat/channels/{channel_id}/messages", json=body
        )
        if not isinstance(payload, dict):
            raise TransportError("send response is not an object", status=200)
        return payload

    async def create_channel(
        self,
        kind: ChannelKind,
        name: str | None = None,
        member_ids: Iterable[str] = (),
        description: str | None = None,
        is_private: bool = False,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "type": ChannelKind(kind).value,
            "memberIds": list(member_ids),
            "isPrivate": is_private,
        }
        if name:
            body["name"] = name
        if description:
            body["description"] = description
        payload = await self._request("POST", "/api/chat/channels", json=body)
        if not isinstance(payload, dict) or "id" not in payload:
            raise TransportError("create channel response has no id", status=200)
        return payload

    async def add_members(self, channel_id: str, member_ids: Iterable[str]) -> None:
        await self._request(
            "PUT",
            f"/api/chat/channels/{channel_id}",
            json={"addMembers": list(member_ids)},
        )
