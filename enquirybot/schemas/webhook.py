from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, Field


class WebhookProfile(BaseModel):
    name: Optional[str] = None


class WebhookContact(BaseModel):
    wa_id: Optional[str] = None
    profile: Optional[WebhookProfile] = None


class WebhookText(BaseModel):
    body: Optional[str] = None


class WebhookReaction(BaseModel):
    emoji: Optional[str] = None
    message_id: Optional[str] = None


class WebhookReplyOption(BaseModel):
    id: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None


class WebhookInteractive(BaseModel):
    type: Optional[str] = None
    button_reply: Optional[WebhookReplyOption] = None
    list_reply: Optional[WebhookReplyOption] = None


class WebhookButton(BaseModel):
    text: Optional[str] = None
    payload: Optional[str] = None


class WebhookMedia(BaseModel):
    id: Optional[str] = None
    mime_type: Optional[str] = None
    caption: Optional[str] = None
    filename: Optional[str] = None
    sha256: Optional[str] = None


class WebhookContext(BaseModel):
    id: Optional[str] = None
    sender: Optional[str] = Field(default=None, validation_alias=AliasChoices("from", "sender"))


class WebhookMessage(BaseModel):
    id: str
    sender: str = Field(validation_alias=AliasChoices("from", "sender"))
    timestamp: Optional[str] = None
    type: str = "text"
    text: Optional[WebhookText] = None
    reaction: Optional[WebhookReaction] = None
    interactive: Optional[WebhookInteractive] = None
    button: Optional[WebhookButton] = None
    image: Optional[WebhookMedia] = None
    video: Optional[WebhookMedia] = None
    audio: Optional[WebhookMedia] = None
    document: Optional[WebhookMedia] = None
    voice: Optional[WebhookMedia] = None
    sticker: Optional[WebhookMedia] = None
    context: Optional[WebhookContext] = None


class WebhookStatusError(BaseModel):
    code: Optional[int] = None
    title: Optional[str] = None
    message: Optional[str] = None
    error_data: Optional[dict[str, Any]] = None


class WebhookStatus(BaseModel):
    id: str
    status: str
    timestamp: Optional[str] = None
    recipient_id: Optional[str] = None
    errors: list[WebhookStatusError] = []


class WebhookMetadata(BaseModel):
    display_phone_number: Optional[str] = None
    phone_number_id: Optional[str] = None


class WebhookValue(BaseModel):
    messaging_product: Optional[str] = None
    metadata: Optional[WebhookMetadata] = None
    contacts: list[WebhookContact] = []
    messages: list[WebhookMessage] = []
    statuses: list[WebhookStatus] = []


class WebhookChange(BaseModel):
    field: Optional[str] = None
    value: Optional[WebhookValue] = None


class WebhookEntry(BaseModel):
    id: Optional[str] = None
    changes: list[WebhookChange] = []


class WhatsAppWebhookPayload(BaseModel):
    object: Optional[str] = None
    entry: list[WebhookEntry] = []


class WebhookAck(BaseModel):
    success: bool = True
    accepted_messages: int = 0
    duplicates: int = 0
    status_updates: int = 0
