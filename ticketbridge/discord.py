"""Minimal Discord REST adapter implementing ``ChatPlatform`` with httpx.

Only the four calls the bridge needs are implemented. HTTP failures are
mapped onto the bridge error taxonomy so the dispatcher can settle them:
429/5xx and network errors are transient, 401/403 and other 4xx permanent.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional, Sequence

import httpx

from ticketbridge.errors import ChatPermissionError, ChatPlatformError, ChatRequestError
from ticketbridge.models import OutboundMessage, PriorMessage
from ticketbridge.ports import ThreadHandle


logger = logging.getLogger(__name__)

# Discord channel types for announcement, public and private threads
THREAD_CHANNEL_TYPES = frozenset({10, 11, 12})

# Bridged messages are posted as "**Author:** text"
_AUTHOR_PREFIX = re.compile(r"^\*\*[^*\n]+:\*\* ")


class DiscordRestClient:
    def __init__(
        self,
        token: str,
        *,
        api_base: str = "https://discord.com/api/v10",
        client: Optional[httpx.AsyncClient] = None,
        timeout_s: float = 30.0,
    ):
        self._client = client or httpx.AsyncClient(
            base_url=api_base,
            headers={"Authorization": f"Bot {token}"},
            timeout=timeout_s,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch_thread(self, thread_id: str) -> Optional[ThreadHandle]:
        response = await self._request("GET", f"/channels/{thread_id}", allow_404=True)
        if response is None:
            return None
        body = response.json()
        metadata = body.get("thread_metadata") or {}
        return ThreadHandle(
            id=str(body["id"]),
            is_thread=body.get("type") in THREAD_CHANNEL_TYPES,
            name=body.get("name"),
            archived=bool(metadata.get("archived", False)),
        )

    async def send_to_thread(self, thread: ThreadHandle, message: OutboundMessage) -> str:
        payload = self._message_payload(message)
        if message.files:
            payload["attachments"] = [{"id": i, "filename": f.filename} for i, f in enumerate(message.files)]
            files = {
                f"files[{i}]": (f.filename, f.data, f.content_type)
                for i, f in enumerate(message.files)
            }
            response = await self._request(
                "POST", f"/channels/{thread.id}/messages",
                data={"payload_json": json.dumps(payload)}, files=files,
            )
        else:
            response = await self._request("POST", f"/channels/{thread.id}/messages", json=payload)
        assert response is not None
        return str(response.json()["id"])

    async def recent_messages(self, thread: ThreadHandle, limit: int = 50) -> Sequence[PriorMessage]:
        response = await self._request("GET", f"/channels/{thread.id}/messages", params={"limit": min(max(limit, 1), 100)})
        assert response is not None
        return [PriorMessage(id=str(m.get("id")), content=self._original_content(m)) for m in response.json()]

    async def archive_thread(self, thread: ThreadHandle) -> None:
        await self._request("PATCH", f"/channels/{thread.id}", json={"archived": True})

    @staticmethod
    def _original_content(raw: dict[str, Any]) -> str:
        """Text as the ticket side wrote it, without the author prefix we add."""
        content = raw.get("content") or ""
        if (raw.get("author") or {}).get("bot"):
            content = _AUTHOR_PREFIX.sub("", content, count=1)
        return content

    @staticmethod
    def _message_payload(message: OutboundMessage) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        content = message.content
        if content and message.author_name:
            content = f"**{message.author_name}:** {content}"
        if message.color is not None:
            payload["embeds"] = [{"description": content or "", "color": message.color}]
        elif content:
            payload["content"] = content
        if message.reply_to:
            payload["message_reference"] = {"message_id": message.reply_to, "fail_if_not_exists": False}
        return payload

    async def _request(self, method: str, url: str, *, allow_404: bool = False, **kwargs: Any) -> Optional[httpx.Response]:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            raise ChatPlatformError(f"{method} {url} failed: {exc}") from exc

        status = response.status_code
        if status == 404 and allow_404:
            return None
        if status == 429 or status >= 500:
            raise ChatPlatformError(f"{method} {url} returned {status}", status_code=status)
        if status in (401, 403):
            raise ChatPermissionError(f"{method} {url} was refused ({status})", status_code=status)
        if status >= 400:
            raise ChatRequestError(f"{method} {url} was rejected ({status}): {response.text[:200]}", status_code=status)
        return response
