"""Periodic follow-up rules for stalled and finished enquiries.

Each rule selects candidates with a plain query, then re-reads every
candidate right before acting and records its intent before the send, so
two overlapping sweeps cannot both send to the same enquiry.
"""

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from enquirybot.config import settings
from enquirybot.logging_config import get_logger
from enquirybot.models import Enquiry
from enquirybot.services.enquiry_service import EnquiryStatus, close_enquiry, touch
from enquirybot.services.events import EventPublisher
from enquirybot.services.flow_store import END
from enquirybot.services.log_service import record_log
from enquirybot.services.messages_catalog import (
    REVIEW_BUTTON_LABEL,
    REVIEW_REQUEST_TEXT,
    REVIEW_SECTIONS,
    STUCK_PROMPT_BUTTONS,
    STUCK_PROMPT_TEXT,
    TIMEOUT_CLOSE_TEXT,
    localized,
)
from enquirybot.services.send_service import MessageSender, resolve_credentials
from enquirybot.services.whatsapp_service import WhatsAppAPIError, WhatsAppClient
from enquirybot.timeutils import ensure_timezone

logger = get_logger("followup_service")

REVIEW_PENDING = "PENDING"


def _summary() -> dict:
    return {"candidates": 0, "sent": 0, "skipped": 0, "failed": 0}


def _not_terminal():
    return or_(Enquiry.conversation_state.is_(None), Enquiry.conversation_state != END)


def _older_than(value: Optional[datetime], cutoff: datetime) -> bool:
    value = ensure_timezone(value)
    return value is not None and value <= cutoff


async def send_stuck_follow_ups(db: Session, sender: MessageSender, now: datetime) -> dict:
    return await _run_rule("stuck", db, sender, now, _stuck_candidates, _send_stuck_prompt)


async def close_timed_out_enquiries(db: Session, sender: MessageSender, now: datetime) -> dict:
    return await _run_rule("timeout", db, sender, now, _timeout_candidates, _close_timed_out)


async def send_review_requests(db: Session, sender: MessageSender, now: datetime) -> dict:
    return await _run_rule("review", db, sender, now, _review_candidates, _send_review_request)


async def _run_rule(name, db, sender, now, select, act) -> dict:
    summary = _summary()
    candidates = select(db, now)
    summary["candidates"] = len(candidates)
    for enquiry in candidates:
        try:
            outcome = await act(db, sender, enquiry, now)
        except WhatsAppAPIError as exc:
            db.rollback()
            summary["failed"] += 1
            logger.warning(
                "Follow-up send failed",
                extra={"context": {"rule": name, "enquiry_id": str(enquiry.id), "error": str(exc), **exc.to_context()}},
            )
            continue
        except Exception as exc:
            db.rollback()
            summary["failed"] += 1
            logger.error(
                "Follow-up rule failed for enquiry",
                extra={"context": {"rule": name, "enquiry_id": str(enquiry.id), "error": str(exc)}},
                exc_info=True,
            )
            continue
        summary["sent" if outcome else "skipped"] += 1
    if summary["candidates"]:
        logger.info("Follow-up rule finished", extra={"context": {"rule": name, **summary}})
    return summary


# Stuck prompt


def _stuck_candidates(db: Session, now: datetime) -> list[Enquiry]:
    idle_cutoff = now - timedelta(minutes=settings.stuck_after_minutes)
    repeat_cutoff = now - timedelta(hours=settings.stuck_rate_limit_hours)
    return (
        db.query(Enquiry)
        .filter(
            _not_terminal(),
            Enquiry.status.notin_([EnquiryStatus.CLOSED.value, EnquiryStatus.HANDOVER.value]),
            Enquiry.updated_at <= idle_cutoff,
            or_(
                Enquiry.last_stuck_follow_up_sent_at.is_(None),
                Enquiry.last_stuck_follow_up_sent_at <= repeat_cutoff,
            ),
        )
        .all()
    )


async def _send_stuck_prompt(db: Session, sender: MessageSender, enquiry: Enquiry, now: datetime) -> bool:
    db.refresh(enquiry)
    repeat_cutoff = now - timedelta(hours=settings.stuck_rate_limit_hours)
    if enquiry.conversation_state == END or enquiry.status in (
        EnquiryStatus.CLOSED.value,
        EnquiryStatus.HANDOVER.value,
    ):
        return False
    if enquiry.last_stuck_follow_up_sent_at is not None and not _older_than(
        enquiry.last_stuck_follow_up_sent_at, repeat_cutoff
    ):
        return False

    credentials = resolve_credentials(db, enquiry.recipient_id)
    if not credentials.ok:
        logger.warning(
            "Stuck prompt skipped, no credentials",
            extra={"context": {"enquiry_id": str(enquiry.id), **credentials.to_context()}},
        )
        return False

    previous_stamp, previous_updated = enquiry.last_stuck_follow_up_sent_at, enquiry.updated_at
    enquiry.last_stuck_follow_up_sent_at = now
    touch(enquiry, now)
    db.commit()
    try:
        await sender.send_buttons(
            credentials.value,
            enquiry.customer_phone,
            localized(STUCK_PROMPT_TEXT, enquiry.language),
            localized(STUCK_PROMPT_BUTTONS, enquiry.language),
            system=True,
        )
    except WhatsAppAPIError:
        enquiry.last_stuck_follow_up_sent_at = previous_stamp
        enquiry.updated_at = previous_updated
        db.commit()
        raise
    logger.info("Stuck prompt sent", extra={"context": {"enquiry_id": str(enquiry.id)}})
    return True


# Timeout closure


def _timeout_candidates(db: Session, now: datetime) -> list[Enquiry]:
    cutoff = now - timedelta(minutes=settings.timeout_after_stuck_minutes)
    return (
        db.query(Enquiry)
        .filter(
            _not_terminal(),
            Enquiry.last_stuck_follow_up_sent_at.isnot(None),
            Enquiry.last_stuck_follow_up_sent_at <= cutoff,
            Enquiry.updated_at <= Enquiry.last_stuck_follow_up_sent_at,
        )
        .all()
    )


async def _close_timed_out(db: Session, sender: MessageSender, enquiry: Enquiry, now: datetime) -> bool:
    db.refresh(enquiry)
    cutoff = now - timedelta(minutes=settings.timeout_after_stuck_minutes)
    stamp = ensure_timezone(enquiry.last_stuck_follow_up_sent_at)
    if enquiry.conversation_state == END or stamp is None or stamp > cutoff:
        return False
    if ensure_timezone(enquiry.updated_at) > stamp:
        return False

    credentials = resolve_credentials(db, enquiry.recipient_id)
    if not credentials.ok:
        logger.warning(
            "Timeout closure skipped, no credentials",
            extra={"context": {"enquiry_id": str(enquiry.id), **credentials.to_context()}},
        )
        return False

    await sender.send_text(
        credentials.value,
        enquiry.customer_phone,
        localized(TIMEOUT_CLOSE_TEXT, enquiry.language),
        system=True,
    )
    close_enquiry(enquiry, now)
    enquiry.end_message_sent = True
    enquiry.completion_follow_up_sent = True
    db.commit()
    logger.info("Enquiry closed after stuck prompt timeout", extra={"context": {"enquiry_id": str(enquiry.id)}})
    return True


# Review request


def _review_candidates(db: Session, now: datetime) -> list[Enquiry]:
    return (
        db.query(Enquiry)
        .filter(
            Enquiry.conversation_state == END,
            Enquiry.completion_follow_up_sent.is_(False),
            Enquiry.ended_at.isnot(None),
            Enquiry.ended_at <= now - timedelta(minutes=settings.review_delay_minutes),
        )
        .all()
    )


async def _send_review_request(db: Session, sender: MessageSender, enquiry: Enquiry, now: datetime) -> bool:
    db.refresh(enquiry)
    if enquiry.conversation_state != END or enquiry.completion_follow_up_sent:
        return False
    if not _older_than(enquiry.ended_at, now - timedelta(minutes=settings.review_delay_minutes)):
        return False

    credentials = resolve_credentials(db, enquiry.recipient_id)
    if not credentials.ok:
        logger.warning(
            "Review request skipped, no credentials",
            extra={"context": {"enquiry_id": str(enquiry.id), **credentials.to_context()}},
        )
        return False

    previous_review_status = enquiry.review_status
    enquiry.completion_follow_up_sent = True
    enquiry.review_status = REVIEW_PENDING
    touch(enquiry, now)
    db.commit()

    try:
        await sender.send_list(
            credentials.value,
            enquiry.customer_phone,
            REVIEW_REQUEST_TEXT,
            REVIEW_BUTTON_LABEL,
            REVIEW_SECTIONS,
            system=True,
        )
    except WhatsAppAPIError:
        enquiry.completion_follow_up_sent = False
        enquiry.review_status = previous_review_status
        db.commit()
        raise
    logger.info("Review request sent", extra={"context": {"enquiry_id": str(enquiry.id)}})
    return True


# Inactivity closer


def close_inactive_enquiries(db: Session, now: datetime) -> dict:
    """Silently end every open-ended enquiry untouched for the inactivity window."""
    summary = _summary()
    cutoff = now - timedelta(minutes=settings.inactivity_close_minutes)
    candidates = db.query(Enquiry).filter(_not_terminal(), Enquiry.updated_at <= cutoff).all()
    summary["candidates"] = len(candidates)
    for enquiry in candidates:
        try:
            db.refresh(enquiry)
            if enquiry.conversation_state == END or not _older_than(enquiry.updated_at, cutoff):
                summary["skipped"] += 1
                continue
            close_enquiry(enquiry, now, status=None)
            db.commit()
            record_log(
                db,
                "info",
                f"Enquiry for {enquiry.customer_phone} ended due to inactivity "
                f"({settings.inactivity_close_minutes} mins).",
            )
            summary["sent"] += 1
        except Exception as exc:
            db.rollback()
            summary["failed"] += 1
            logger.error(
                "Inactivity closure failed",
                extra={"context": {"enquiry_id": str(enquiry.id), "error": str(exc)}},
                exc_info=True,
            )
    if summary["candidates"]:
        logger.info("Follow-up rule finished", extra={"context": {"rule": "inactivity", **summary}})
    return summary


async def run_follow_up_sweep(
    db: Session,
    client: WhatsAppClient,
    publisher: EventPublisher,
    now: datetime,
) -> dict:
    """Run every rule once; a failing rule is logged and reported as empty."""
    sender = MessageSender(db, client, publisher, now_func=lambda: now)
    results = {}
    rules = (
        ("stuck", lambda: send_stuck_follow_ups(db, sender, now)),
        ("timeout", lambda: close_timed_out_enquiries(db, sender, now)),
        ("review", lambda: send_review_requests(db, sender, now)),
    )
    for name, rule in rules:
        try:
            results[name] = await rule()
        except Exception as exc:
            db.rollback()
            results[name] = _summary()
            logger.error("Follow-up rule crashed", extra={"context": {"rule": name, "error": str(exc)}}, exc_info=True)
    try:
        results["inactivity"] = close_inactive_enquiries(db, now)
    except Exception as exc:
        db.rollback()
        results["inactivity"] = _summary()
        logger.error(
            "Follow-up rule crashed", extra={"context": {"rule": "inactivity", "error": str(exc)}}, exc_info=True
        )
    return results
