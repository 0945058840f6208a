from pathlib import Path
from typing import Optional

import httpx

from enquirybot.config import settings
from enquirybot.logging_config import get_logger

logger = get_logger("whatsapp_service")


class WhatsAppAPIError(Exception):
    """Structured failure of a Graph API call."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        code: Optional[int] = None,
        title: Optional[str] = None,
        detail: Optional[str] = None,
    ):
        self.status_code = status_code
        self.code = code
        self.title = title
        self.detail = detail
        super().__init__(message)

    @property
    def is_transient(self) -> bool:
        return self.status_code is None or self.status_code >= 500 or self.status_code == 429

    def to_context(self) -> dict:
        return {
            "status_code": self.status_code,
            "code": self.code,
            "title": self.title,
            "detail": self.detail,
        }


class WhatsAppClient:
    """Client for the WhatsApp Cloud (Graph) API messages endpoint."""

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        api_version: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.graph_api_base_url).rstrip("/")
        self.api_version = api_version or settings.graph_api_version
        self.timeout = timeout if timeout is not None else settings.provider_timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{self.api_version}/{path.lstrip('/')}"

    @staticmethod
    def _raise_for_error(response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        try:
            error = response.json().get("error") or {}
        except ValueError:
            error = {}
        raise WhatsAppAPIError(
            error.get("message") or f"Graph API returned HTTP {response.status_code}",
            status_code=response.status_code,
            code=error.get("code"),
            title=error.get("type") or error.get("title"),
            detail=(error.get("error_data") or {}).get("details"),
        )

    async def _request(self, method: str, path: str, access_token: str, payload: Optional[dict] = None) -> dict:
        headers = {"Authorization": f"Bearer {access_token}"}
        try:
            async with self._client() as client:
                response = await client.request(method, self._url(path), json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise WhatsAppAPIError(f"Graph API timeout: {exc}") from exc
        except httpx.HTTPError as exc:
            raise WhatsAppAPIError(f"Graph API request failed: {exc}") from exc

        self._raise_for_error(response)
        try:
            return response.json()
        except ValueError as exc:
            raise WhatsAppAPIError("Graph API returned a non-JSON body", status_code=response.status_code) from exc

    async def _send(self, from_id: str, access_token: str, payload: dict) -> str:
        data = await self._request("POST", f"{from_id}/messages", access_token, {"messaging_product": "whatsapp", **payload})
        messages = data.get("messages") or []
        message_id = messages[0].get("id") if messages else None
        if not message_id:
            raise WhatsAppAPIError("Graph API response carried no message id")
        logger.info(
            "WhatsApp message sent",
            extra={"context": {"to": payload.get("to"), "type": payload.get("type"), "message_id": message_id}},
        )
        return message_id

    async def send_text(
        self,
        to: str,
        body: str,
        access_token: str,
        from_id: str,
        context_message_id: Optional[str] = None,
    ) -> str:
        payload = {
            "recipient_type": "individual",
            "to": to,
            "type": "text",
            "text": {"preview_url": False, "body": body},
        }
        if context_message_id:
            payload["context"] = {"message_id": context_message_id}
        return await self._send(from_id, access_token, payload)

    async def send_buttons(
        self,
        to: str,
        body: str,
        buttons: list[dict],
        access_token: str,
        from_id: str,
    ) -> str:
        """Send reply buttons; each button is ``{"id": ..., "title": ...}``."""
        payload = {
            "recipient_type": "individual",
            "to": to,
            "type": "interactive",
            "interactive": {
                "type": "button",
                "body": {"text": body},
                "action": {
                    "buttons": [
                        {"type": "reply", "reply": {"id": button["id"], "title": button["title"]}}
                        for button in buttons
                    ]
                },
            },
        }
        return await self._send(from_id, access_token, payload)

    async def send_list(
        self,
        to: str,
        body: str,
        button_label: str,
        sections: list[dict],
        access_token: str,
        from_id: str,
    ) -> str:
        """Send a list message; sections are ``{"title", "rows": [{"id", "title", "description"?}]}``."""
        wire_sections = []
        for section in sections:
            rows = []
            for row in section.get("rows") or []:
                wire_row = {"id": row["id"], "title": row["title"]}
                if row.get("description"):
                    wire_row["description"] = row["description"]
                rows.append(wire_row)
            wire_sections.append({"title": section.get("title") or "", "rows": rows})

        payload = {
            "recipient_type": "individual",
            "to": to,
            "type": "interactive",
            "interactive": {
                "type": "list",
                "body": {"text": body},
                "action": {"button": button_label, "sections": wire_sections},
            },
        }
        return await self._send(from_id, access_token, payload)

    async def get_media_url(self, media_id: str, access_token: str) -> dict:
        """Resolve a media id to its short-lived download URL and mime type."""
        data = await self._request("GET", media_id, access_token)
        if not data.get("url"):
            raise WhatsAppAPIError(f"No download URL for media {media_id}")
        return data

    async def download_media(self, url: str, access_token: str, target_path: Path, max_bytes: int) -> int:
        """Stream a media download to ``target_path``; returns the byte count."""
        headers = {"Authorization": f"Bearer {access_token}"}
        size_bytes = 0
        try:
            async with self._client() as client:
                async with client.stream("GET", url, headers=headers) as response:
                    if response.status_code >= 400:
                        raise WhatsAppAPIError(
                            f"Media download returned HTTP {response.status_code}",
                            status_code=response.status_code,
                        )
                    with target_path.open("wb") as handle:
                        async for chunk in response.aiter_bytes():
                            if not chunk:
                                continue
                            size_bytes += len(chunk)
                            if size_bytes > max_bytes:
                                raise WhatsAppAPIError("Media exceeds size limit", title="too_large")
                            handle.write(chunk)
        except httpx.HTTPError as exc:
            if target_path.exists():
                target_path.unlink()
            raise WhatsAppAPIError(f"Media download failed: {exc}") from exc
        except WhatsAppAPIError:
            if target_path.exists():
                target_path.unlink()
            raise
        return size_bytes


def format_failure_reason(code, title: Optional[str], details: Optional[str]) -> str:
    return f"{code} - {title} ({details or 'No details'})"
