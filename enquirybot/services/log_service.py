from typing import Optional

from sqlalchemy.orm import Session

from enquirybot.logging_config import get_logger
from enquirybot.models import LogEntry

logger = get_logger("log_service")

LOG_LEVELS = {"info", "error", "success"}


def record_log(db: Session, level: str, message: str, *, campaign_id=None, commit: bool = True) -> Optional[LogEntry]:
    """Persist an operator-visible log entry; never raises."""
    if level not in LOG_LEVELS:
        level = "info"
    entry = LogEntry(level=level, message=message, campaign_id=campaign_id)
    try:
        db.add(entry)
        if commit:
            db.commit()
        else:
            db.flush()
    except Exception as exc:
        db.rollback()
        logger.error("Failed to persist log entry", extra={"context": {"message": message, "error": str(exc)}})
        return None
    return entry
