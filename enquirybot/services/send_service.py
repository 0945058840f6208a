from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.orm import Session

from enquirybot.logging_config import get_logger
from enquirybot.models import Message, PhoneNumber
from enquirybot.services.events import NEW_MESSAGE, EventPublisher
from enquirybot.services.message_service import save_outgoing_message, serialize_message
from enquirybot.services.result import Result
from enquirybot.services.whatsapp_service import WhatsAppClient
from enquirybot.timeutils import utcnow

logger = get_logger("send_service")


@dataclass
class Credentials:
    access_token: str
    phone_number_id: str


def resolve_credentials(db: Session, recipient_id: str) -> Result[Credentials]:
    """Look up the access token that may send from a business number."""
    phone = db.query(PhoneNumber).filter(PhoneNumber.phone_number_id == recipient_id).first()
    if not phone:
        return Result.failure(f"Unknown business number {recipient_id}", code="unknown_phone_number")
    account = phone.waba_account
    if not account or not account.access_token:
        return Result.failure(f"No access token for business number {recipient_id}", code="missing_credentials")
    return Result.success(Credentials(access_token=account.access_token, phone_number_id=recipient_id))


class MessageSender:
    """Send, persist and broadcast outbound messages as one step.

    Provider errors propagate; nothing is persisted or broadcast for a send
    that did not go out.
    """

    def __init__(
        self,
        db: Session,
        client: WhatsAppClient,
        publisher: EventPublisher,
        now_func: Callable = utcnow,
    ):
        self.db = db
        self.client = client
        self.publisher = publisher
        self.now_func = now_func

    async def _record(self, customer_phone: str, recipient_id: str, provider_message_id: str, **fields) -> Message:
        message = save_outgoing_message(
            self.db,
            provider_message_id=provider_message_id,
            customer_phone=customer_phone,
            recipient_id=recipient_id,
            timestamp=self.now_func(),
            **fields,
        )
        await self.publisher.publish(
            NEW_MESSAGE,
            {"from": customer_phone, "recipientId": recipient_id, "message": serialize_message(message)},
        )
        return message

    async def send_text(
        self,
        credentials: Credentials,
        to: str,
        body: str,
        *,
        system: bool = False,
        context_message_id: Optional[str] = None,
    ) -> Message:
        provider_message_id = await self.client.send_text(
            to,
            body,
            credentials.access_token,
            credentials.phone_number_id,
            context_message_id=context_message_id,
        )
        return await self._record(
            to,
            credentials.phone_number_id,
            provider_message_id,
            body=body,
            message_type="text",
            is_system_generated=system,
            context_message_id=context_message_id,
        )

    async def send_buttons(
        self,
        credentials: Credentials,
        to: str,
        body: str,
        buttons: list[dict],
        *,
        system: bool = False,
    ) -> Message:
        provider_message_id = await self.client.send_buttons(
            to, body, buttons, credentials.access_token, credentials.phone_number_id
        )
        interactive = {"type": "button", "body": body, "buttons": [dict(button) for button in buttons]}
        return await self._record(
            to,
            credentials.phone_number_id,
            provider_message_id,
            body=body,
            message_type="interactive",
            interactive=interactive,
            is_system_generated=system,
        )

    async def send_list(
        self,
        credentials: Credentials,
        to: str,
        body: str,
        button_label: str,
        sections: list[dict],
        *,
        system: bool = False,
    ) -> Message:
        provider_message_id = await self.client.send_list(
            to, body, button_label, sections, credentials.access_token, credentials.phone_number_id
        )
        interactive = {"type": "list", "body": body, "button": button_label, "sections": sections}
        return await self._record(
            to,
            credentials.phone_number_id,
            provider_message_id,
            body=body,
            message_type="interactive",
            interactive=interactive,
            is_system_generated=system,
        )

    async def replay(self, credentials: Credentials, to: str, message: Message) -> Message:
        """Re-send a stored outbound message keeping its kind."""
        interactive = message.interactive or {}
        body = interactive.get("body") or message.body or ""
        if interactive.get("type") == "button" and interactive.get("buttons"):
            return await self.send_buttons(credentials, to, body, interactive["buttons"], system=True)
        if interactive.get("type") == "list" and interactive.get("sections"):
            return await self.send_list(
                credentials,
                to,
                body,
                interactive.get("button") or "Options",
                interactive["sections"],
                system=True,
            )
        return await self.send_text(credentials, to, body or "How can we help?", system=True)
