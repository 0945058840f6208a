"""Ordered intent policy for a buffered inbound turn.

Classifiers run in table order and the first match wins, so each turn maps
to exactly one intent.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from enquirybot.models import Contact
from enquirybot.services.bot_engine import is_system_button
from enquirybot.services.buffer_service import BufferedTurn
from enquirybot.services.messages_catalog import UNSUBSCRIBE_REASONS

STOP_KEYWORDS = ["stop", "إيقاف"]
LEAD_STOP_KEYWORDS = ["stop", "unsubscribe", "cancel", "opt out", "remove"]
INTERESTED_PHRASE = "yes, i am interested"
INTERESTED_PHRASE_AR = "نعم، مهتم"
NOT_INTERESTED_PHRASE = "not interested"
OTHER_REASON = "Other"


class Intent(str, Enum):
    SYSTEM_BUTTON = "system_button"
    CUSTOM_REASON = "custom_reason"
    STOP = "stop"
    REASON_SELECTION = "reason_selection"
    RESUBSCRIBE = "resubscribe"
    CAMPAIGN_INTERESTED = "campaign_interested"
    CAMPAIGN_NOT_INTERESTED = "campaign_not_interested"
    BOT = "bot"
    IGNORE = "ignore"


@dataclass
class IntentContext:
    text: str
    contact: Optional[Contact]
    campaign_id: Optional[object]
    option_id: Optional[str] = None

    @property
    def lowered(self) -> str:
        return self.text.lower()


@dataclass
class IntentDecision:
    intent: Intent
    reason: Optional[str] = None
    language: str = "en"


def _system_button(ctx: IntentContext) -> Optional[IntentDecision]:
    if is_system_button(ctx.option_id):
        return IntentDecision(Intent.SYSTEM_BUTTON)
    return None


def _custom_reason(ctx: IntentContext) -> Optional[IntentDecision]:
    contact = ctx.contact
    if (
        contact is not None
        and contact.unsubscribe_reason == OTHER_REASON
        and contact.is_subscribed
        and "stop" not in ctx.lowered
    ):
        return IntentDecision(Intent.CUSTOM_REASON, reason=ctx.text)
    return None


def _stop(ctx: IntentContext) -> Optional[IntentDecision]:
    if any(keyword in ctx.lowered for keyword in STOP_KEYWORDS):
        return IntentDecision(Intent.STOP)
    return None


def _reason_selection(ctx: IntentContext) -> Optional[IntentDecision]:
    for reason in UNSUBSCRIBE_REASONS:
        if reason.lower() == ctx.lowered.strip():
            return IntentDecision(Intent.REASON_SELECTION, reason=reason)
    return None


def _resubscribe(ctx: IntentContext) -> Optional[IntentDecision]:
    if ctx.contact is not None and not ctx.contact.is_subscribed:
        return IntentDecision(Intent.RESUBSCRIBE)
    return None


def _campaign_keyword(ctx: IntentContext) -> Optional[IntentDecision]:
    if ctx.campaign_id is None:
        return None
    if INTERESTED_PHRASE in ctx.lowered:
        return IntentDecision(Intent.CAMPAIGN_INTERESTED)
    if INTERESTED_PHRASE_AR in ctx.lowered:
        return IntentDecision(Intent.CAMPAIGN_INTERESTED, language="ar")
    if NOT_INTERESTED_PHRASE in ctx.lowered:
        return IntentDecision(Intent.CAMPAIGN_NOT_INTERESTED)
    return None


def _fallback(ctx: IntentContext) -> Optional[IntentDecision]:
    # Campaign replies without a keyword action are left to humans
    if ctx.campaign_id is not None:
        return IntentDecision(Intent.IGNORE)
    return IntentDecision(Intent.BOT)


CLASSIFIERS: list[tuple[Intent, Callable[[IntentContext], Optional[IntentDecision]]]] = [
    (Intent.SYSTEM_BUTTON, _system_button),
    (Intent.CUSTOM_REASON, _custom_reason),
    (Intent.STOP, _stop),
    (Intent.REASON_SELECTION, _reason_selection),
    (Intent.RESUBSCRIBE, _resubscribe),
    (Intent.CAMPAIGN_INTERESTED, _campaign_keyword),
    (Intent.BOT, _fallback),
]


def classify_turn(turn: BufferedTurn, contact: Optional[Contact]) -> IntentDecision:
    ctx = IntentContext(
        text=turn.combined_body or "",
        contact=contact,
        campaign_id=turn.campaign_id,
        option_id=turn.option_id,
    )
    for _intent, classifier in CLASSIFIERS:
        decision = classifier(ctx)
        if decision is not None:
            return decision
    return IntentDecision(Intent.IGNORE)


def is_lead_stop_message(text: str | None) -> bool:
    lowered = (text or "").lower()
    return any(keyword in lowered for keyword in LEAD_STOP_KEYWORDS)
