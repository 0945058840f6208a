import re
from datetime import datetime
from enum import Enum
from typing import Optional
from urllib.parse import urlparse

from sqlalchemy.orm import Session

from enquirybot.logging_config import get_logger
from enquirybot.models import Enquiry
from enquirybot.services.flow_store import END

logger = get_logger("enquiry_service")

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
URL_PATTERN = re.compile(r"(https?://[^\s]+)", re.IGNORECASE)
PLACEHOLDER_PATTERN = re.compile(r"{{\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*}}")

# saveToField values that map onto dedicated columns
ENQUIRY_FIELDS = {
    "name": "name",
    "email": "email",
    "budget": "budget",
    "bedrooms": "bedrooms",
    "projectname": "project_name",
    "project_name": "project_name",
}


class EnquiryStatus(str, Enum):
    OPEN = "open"
    HANDOVER = "handover"
    CLOSED = "closed"


def touch(enquiry: Enquiry, now: datetime) -> None:
    enquiry.updated_at = now


def is_terminal(enquiry: Enquiry) -> bool:
    return enquiry.conversation_state == END


def get_latest_enquiry(db: Session, customer_phone: str, recipient_id: str) -> Enquiry | None:
    return (
        db.query(Enquiry)
        .filter(Enquiry.customer_phone == customer_phone, Enquiry.recipient_id == recipient_id)
        .order_by(Enquiry.updated_at.desc(), Enquiry.created_at.desc())
        .first()
    )


def create_enquiry(
    db: Session,
    *,
    customer_phone: str,
    recipient_id: str,
    state: str,
    now: datetime,
    previous: Optional[Enquiry] = None,
    contact_name: Optional[str] = None,
    **fields,
) -> Enquiry:
    """Open a new enquiry, inheriting name and email from a closed predecessor."""
    values = {
        "status": EnquiryStatus.OPEN.value,
        "language": "en",
        "extra_fields": {},
        "last_node_sent_at": now,
    }
    values.update(fields)
    enquiry = Enquiry(
        customer_phone=customer_phone,
        recipient_id=recipient_id,
        conversation_state=state,
        created_at=now,
        updated_at=now,
        **values,
    )
    if previous is not None:
        if previous.name:
            enquiry.name = previous.name
            enquiry.skip_name = True
        if previous.email:
            enquiry.email = previous.email
            enquiry.skip_email = True
        if "language" not in fields:
            enquiry.language = previous.language or "en"
    if not enquiry.name and contact_name:
        enquiry.name = contact_name
    db.add(enquiry)
    db.flush()
    logger.info(
        "Enquiry created",
        extra={
            "context": {
                "enquiry_id": str(enquiry.id),
                "customer_phone": customer_phone,
                "recipient_id": recipient_id,
                "skip_name": enquiry.skip_name,
                "skip_email": enquiry.skip_email,
            }
        },
    )
    return enquiry


def restart_enquiry(enquiry: Enquiry, start_key: str, now: datetime) -> None:
    """Begin a fresh run on an existing record; collected answers are kept."""
    enquiry.conversation_state = start_key
    enquiry.status = EnquiryStatus.OPEN.value
    enquiry.ended_at = None
    enquiry.end_message_sent = False
    enquiry.node_follow_up_sent = False
    enquiry.last_node_sent_at = now
    touch(enquiry, now)


def close_enquiry(enquiry: Enquiry, now: datetime, *, status: str | None = EnquiryStatus.CLOSED.value) -> None:
    enquiry.conversation_state = END
    enquiry.ended_at = now
    if status:
        enquiry.status = status
    touch(enquiry, now)


def is_valid_email(value: str | None) -> bool:
    if not value:
        return False
    return bool(EMAIL_PATTERN.match(value.strip()))


def extract_project_from_url(text: str | None) -> str | None:
    """Project name from a ``/properties/<slug>`` link in free text."""
    if not text:
        return None
    match = URL_PATTERN.search(text)
    if not match:
        return None
    try:
        parts = [part for part in urlparse(match.group(1)).path.split("/") if part]
    except ValueError:
        return None
    if "properties" not in parts:
        return None
    index = parts.index("properties")
    if index + 1 >= len(parts):
        return None
    slug = parts[index + 1].replace("-", " ")
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), slug)


def get_field(enquiry: Enquiry, field: str) -> str | None:
    column = ENQUIRY_FIELDS.get(field.lower())
    if column:
        return getattr(enquiry, column)
    return (enquiry.extra_fields or {}).get(field)


def set_field(enquiry: Enquiry, field: str, value: str) -> None:
    column = ENQUIRY_FIELDS.get(field.lower())
    if column:
        setattr(enquiry, column, value)
        return
    extra = dict(enquiry.extra_fields or {})
    extra[field] = value
    enquiry.extra_fields = extra


def fill_template(text: str | None, enquiry: Enquiry) -> str:
    """Substitute ``{{field}}`` placeholders, case-insensitively."""
    if not text:
        return ""
    extra = {key.lower(): value for key, value in (enquiry.extra_fields or {}).items()}

    def _replace(match: re.Match) -> str:
        key = match.group(1).lower()
        if key == "projectname":
            return enquiry.project_name or "our project"
        column = ENQUIRY_FIELDS.get(key)
        if column:
            return getattr(enquiry, column) or ""
        if key in extra:
            return str(extra[key] or "")
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(_replace, text)
