"""Runs the intent policy for a flushed buffer turn and performs its action."""

from typing import Callable, Optional

from sqlalchemy.orm import Session

from enquirybot.config import settings
from enquirybot.logging_config import get_logger
from enquirybot.models import Campaign, Contact, ContactList
from enquirybot.services.bot_engine import BotEngine
from enquirybot.services.buffer_service import BufferedTurn
from enquirybot.services.enquiry_service import EnquiryStatus, create_enquiry
from enquirybot.services.events import CAMPAIGNS_UPDATED, EventPublisher
from enquirybot.services.flow_store import END
from enquirybot.services.intent_service import Intent, IntentDecision, classify_turn, is_lead_stop_message
from enquirybot.services.log_service import record_log
from enquirybot.services.message_service import count_incoming_for_campaign
from enquirybot.services.messages_catalog import (
    CAMPAIGN_INTERESTED_TEXT,
    CAMPAIGN_INTERESTED_TEXT_AR,
    CAMPAIGN_NOT_INTERESTED_TEXT,
    LEAD_NOTIFICATION_TEMPLATE,
    UNSUBSCRIBE_LIST_BUTTON,
    UNSUBSCRIBE_LIST_TEXT,
    UNSUBSCRIBE_OTHER_PROMPT,
    UNSUBSCRIBE_SURVEY_TEXT,
    UNSUBSCRIBED_TEXT,
    WELCOME_BACK_TEXT,
    unsubscribe_reason_sections,
)
from enquirybot.services.send_service import Credentials, MessageSender, resolve_credentials
from enquirybot.services.whatsapp_service import WhatsAppAPIError, WhatsAppClient
from enquirybot.timeutils import utcnow

logger = get_logger("dispatch_service")

UNSUBSCRIBER_LIST_NAME = "Unsubscriber List"


def find_contact(db: Session, phone: str) -> Contact | None:
    return db.query(Contact).filter(Contact.phone_number == phone).first()


def _get_or_create_contact(db: Session, phone: str, name: Optional[str]) -> Contact:
    contact = find_contact(db, phone)
    if contact is None:
        contact = Contact(phone_number=phone, name=name, is_subscribed=True)
        db.add(contact)
        db.flush()
    return contact


def _get_unsubscriber_list(db: Session) -> ContactList:
    contact_list = db.query(ContactList).filter(ContactList.name == UNSUBSCRIBER_LIST_NAME).first()
    if contact_list is None:
        contact_list = ContactList(name=UNSUBSCRIBER_LIST_NAME)
        db.add(contact_list)
        db.flush()
    return contact_list


def unsubscribe_contact(db: Session, contact: Contact, reason: str, now) -> None:
    """Unsubscribe and park the contact on the unsubscriber list, remembering its segment."""
    unsubscriber_list = _get_unsubscriber_list(db)
    if contact.contact_list_id != unsubscriber_list.id:
        contact.previous_contact_list_id = contact.contact_list_id
    contact.contact_list_id = unsubscriber_list.id
    contact.unsubscribe_reason = reason
    contact.is_subscribed = False
    contact.unsubscribed_at = now


def resubscribe_contact(contact: Contact) -> None:
    contact.is_subscribed = True
    if contact.previous_contact_list_id:
        contact.contact_list_id = contact.previous_contact_list_id
        contact.previous_contact_list_id = None
    contact.unsubscribe_reason = None
    contact.unsubscribed_at = None


class TurnDispatcher:
    def __init__(
        self,
        db: Session,
        client: WhatsAppClient,
        publisher: EventPublisher,
        *,
        now_func: Callable = utcnow,
    ):
        self.db = db
        self.publisher = publisher
        self.now_func = now_func
        self.sender = MessageSender(db, client, publisher, now_func=now_func)

    async def dispatch(self, turn: BufferedTurn) -> Optional[IntentDecision]:
        campaign = self.db.get(Campaign, turn.campaign_id) if turn.campaign_id else None
        credentials_result = resolve_credentials(self.db, turn.recipient_id)
        credentials = credentials_result.value if credentials_result.ok else None

        if campaign is not None and turn.is_direct_reply and not is_lead_stop_message(turn.combined_body):
            await self._route_lead(turn, campaign, credentials)

        if credentials is None:
            logger.error(
                "No credentials for business number, skipping replies",
                extra={"context": {"recipient_id": turn.recipient_id, **credentials_result.to_context()}},
            )
            record_log(self.db, "error", f"No credentials for business number {turn.recipient_id}")
            return None

        contact = find_contact(self.db, turn.customer_phone)
        decision = classify_turn(turn, contact)
        logger.info(
            "Turn classified",
            extra={
                "context": {
                    "customer_phone": turn.customer_phone,
                    "recipient_id": turn.recipient_id,
                    "intent": decision.intent.value,
                }
            },
        )

        if decision.intent in (Intent.SYSTEM_BUTTON, Intent.BOT):
            engine = BotEngine(self.db, self.sender, now_func=self.now_func)
            await engine.handle_turn(turn, credentials)
            return decision
        if decision.intent == Intent.IGNORE:
            return decision

        try:
            await self._apply_policy_action(decision, turn, contact, campaign, credentials)
        except WhatsAppAPIError as exc:
            self.db.rollback()
            logger.warning(
                "Auto-reply failed",
                extra={"context": {"intent": decision.intent.value, "error": str(exc), **exc.to_context()}},
            )
        return decision

    async def _reply(self, credentials: Credentials, turn: BufferedTurn, text: str) -> None:
        await self.sender.send_text(credentials, turn.customer_phone, text, system=True)

    async def _apply_policy_action(
        self,
        decision: IntentDecision,
        turn: BufferedTurn,
        contact: Optional[Contact],
        campaign: Optional[Campaign],
        credentials: Credentials,
    ) -> None:
        now = self.now_func()
        phone = turn.customer_phone

        if decision.intent == Intent.CUSTOM_REASON:
            unsubscribe_contact(self.db, contact, decision.reason or "", now)
            self.db.commit()
            await self._reply(credentials, turn, UNSUBSCRIBED_TEXT)
            return

        if decision.intent == Intent.STOP:
            await self._reply(credentials, turn, UNSUBSCRIBE_SURVEY_TEXT)
            await self.sender.send_list(
                credentials,
                phone,
                UNSUBSCRIBE_LIST_TEXT,
                UNSUBSCRIBE_LIST_BUTTON,
                unsubscribe_reason_sections(),
                system=True,
            )
            return

        if decision.intent == Intent.REASON_SELECTION:
            contact = contact or _get_or_create_contact(self.db, phone, turn.contact_name)
            if decision.reason == "Other":
                contact.unsubscribe_reason = "Other"
                self.db.commit()
                await self._reply(credentials, turn, UNSUBSCRIBE_OTHER_PROMPT)
            else:
                unsubscribe_contact(self.db, contact, decision.reason or "", now)
                self.db.commit()
                await self._reply(credentials, turn, UNSUBSCRIBED_TEXT)
            return

        if decision.intent == Intent.RESUBSCRIBE:
            resubscribe_contact(contact)
            self.db.commit()
            await self._reply(credentials, turn, WELCOME_BACK_TEXT)
            return

        if decision.intent == Intent.CAMPAIGN_INTERESTED:
            arabic = decision.language == "ar"
            create_enquiry(
                self.db,
                customer_phone=phone,
                recipient_id=turn.recipient_id,
                state=END,
                now=now,
                name=(contact.name if contact else None) or turn.contact_name or "NA",
                status=EnquiryStatus.HANDOVER.value,
                handover_reason="Campaign Interested (Arabic)" if arabic else "Campaign Interested",
                entry_source=f"Campaign: {campaign.name if campaign else 'Unknown'}",
                language=decision.language,
                ended_at=now,
                completion_follow_up_sent=True,
            )
            self.db.commit()
            await self._reply(credentials, turn, CAMPAIGN_INTERESTED_TEXT_AR if arabic else CAMPAIGN_INTERESTED_TEXT)
            return

        if decision.intent == Intent.CAMPAIGN_NOT_INTERESTED:
            create_enquiry(
                self.db,
                customer_phone=phone,
                recipient_id=turn.recipient_id,
                state=END,
                now=now,
                status=EnquiryStatus.CLOSED.value,
                handover_reason="Campaign Not Interested",
                entry_source=f"Campaign: {campaign.name if campaign else 'Unknown'}",
                ended_at=now,
                completion_follow_up_sent=True,
            )
            self.db.commit()
            await self._reply(credentials, turn, CAMPAIGN_NOT_INTERESTED_TEXT)
            return

    async def _route_lead(self, turn: BufferedTurn, campaign: Campaign, credentials: Optional[Credentials]) -> None:
        """Credit a direct campaign reply and announce first-time leads."""
        incoming = count_incoming_for_campaign(self.db, turn.customer_phone, campaign.id)
        if incoming <= len(turn.events):
            contact = find_contact(self.db, turn.customer_phone)
            name = (contact.name if contact else None) or turn.contact_name or "Unknown"
            logger.info(
                "New campaign lead",
                extra={"context": {"campaign_id": str(campaign.id), "customer_phone": turn.customer_phone}},
            )
            record_log(
                self.db,
                "success",
                f"New lead {name} ({turn.customer_phone}) from campaign {campaign.name}",
                campaign_id=campaign.id,
            )
            if settings.lead_notify_number and credentials is not None:
                body = LEAD_NOTIFICATION_TEMPLATE.format(
                    name=name,
                    phone=turn.customer_phone,
                    campaign=campaign.template_name or campaign.name or "Unknown Campaign",
                )
                try:
                    await self.sender.send_text(credentials, settings.lead_notify_number, body, system=True)
                except WhatsAppAPIError as exc:
                    logger.warning(
                        "Lead notification failed",
                        extra={"context": {"campaign_id": str(campaign.id), "error": str(exc)}},
                    )

        self.db.query(Campaign).filter(Campaign.id == campaign.id).update(
            {Campaign.reply_count: Campaign.reply_count + 1},
            synchronize_session=False,
        )
        self.db.commit()
        await self.publisher.publish(CAMPAIGNS_UPDATED, {"campaignId": str(campaign.id)})


async def dispatch_turn(
    db: Session,
    turn: BufferedTurn,
    *,
    client: WhatsAppClient,
    publisher: EventPublisher,
    now_func: Callable = utcnow,
) -> Optional[IntentDecision]:
    return await TurnDispatcher(db, client, publisher, now_func=now_func).dispatch(turn)
