import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("MEDIA_SIGNING_SECRET", "test-media-secret")
os.environ.setdefault("WHATSAPP_VERIFY_TOKEN", "verify-me")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import enquirybot.models  # noqa: F401
from enquirybot.database import Base
from enquirybot.models import PhoneNumber, WabaAccount
from enquirybot.services.buffer_service import BufferedEvent, aggregate_batch
from enquirybot.services.flow_loader import load_flow_file
from enquirybot.services.send_service import Credentials
from enquirybot.services.whatsapp_service import WhatsAppAPIError

FLOW_PATH = Path(__file__).resolve().parents[1] / "flows" / "property_enquiry.yaml"
T0 = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)
BUSINESS_ID = "1001"
CUSTOMER = "971500000001"


@pytest.fixture
def db():
    """In-memory SQLite session with every table created."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


class FakeWhatsAppClient:
    """Records outbound calls and hands out sequential provider ids."""

    def __init__(self):
        self.sent: list[dict] = []
        self.fail_with: WhatsAppAPIError | None = None
        self.media: dict[str, bytes] = {}
        self._counter = 0

    def _record(self, kind: str, to: str, **fields) -> str:
        if self.fail_with is not None:
            raise self.fail_with
        self._counter += 1
        wamid = f"wamid.out.{self._counter}"
        self.sent.append({"kind": kind, "to": to, "id": wamid, **fields})
        return wamid

    async def send_text(self, to, body, access_token, from_id, context_message_id=None):
        return self._record("text", to, body=body, from_id=from_id)

    async def send_buttons(self, to, body, buttons, access_token, from_id):
        return self._record("buttons", to, body=body, buttons=buttons, from_id=from_id)

    async def send_list(self, to, body, button_label, sections, access_token, from_id):
        return self._record("list", to, body=body, button=button_label, sections=sections, from_id=from_id)

    async def get_media_url(self, media_id, access_token):
        if media_id not in self.media:
            raise WhatsAppAPIError(f"No download URL for media {media_id}", status_code=404)
        return {"url": f"https://lookaside.example/{media_id}", "mime_type": "image/jpeg"}

    async def download_media(self, url, access_token, target_path, max_bytes):
        data = self.media[url.rsplit("/", 1)[-1]]
        target_path.write_bytes(data)
        return len(data)

    def bodies(self) -> list[str]:
        return [item["body"] for item in self.sent]


class RecordingPublisher:
    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    async def publish(self, event, payload):
        self.events.append((event, payload))

    def names(self) -> list[str]:
        return [event for event, _ in self.events]


class Clock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def fake_client():
    return FakeWhatsAppClient()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def business(db):
    """A business number with credentials and the default flow active."""
    account = WabaAccount(name="Capital Avenue", business_account_id="waba-1", access_token="token-1")
    db.add(account)
    db.flush()
    db.add(PhoneNumber(phone_number_id=BUSINESS_ID, display_phone_number="+971 4 000 0000", waba_account_id=account.id))
    db.commit()
    flow = load_flow_file(db, FLOW_PATH, activate_for=[BUSINESS_ID])
    return SimpleNamespace(
        phone_number_id=BUSINESS_ID,
        account=account,
        flow=flow,
        credentials=Credentials(access_token="token-1", phone_number_id=BUSINESS_ID),
    )


@pytest.fixture
def make_turn(clock):
    counter = {"value": 0}

    def _make_turn(
        body: str | None = None,
        *,
        option_id: str | None = None,
        option_title: str | None = None,
        phone: str = CUSTOMER,
        recipient_id: str = BUSINESS_ID,
        campaign_id=None,
        is_direct_reply: bool = False,
        contact_name: str | None = None,
        message_type: str = "text",
    ):
        counter["value"] += 1
        event = BufferedEvent(
            provider_message_id=f"wamid.in.{counter['value']}",
            customer_phone=phone,
            recipient_id=recipient_id,
            body=body if body is not None else option_title,
            message_type="interactive" if option_id else message_type,
            timestamp=clock(),
            option_id=option_id,
            option_title=option_title,
            contact_name=contact_name,
            campaign_id=campaign_id,
            is_direct_reply=is_direct_reply,
        )
        return aggregate_batch([event])

    return _make_turn
