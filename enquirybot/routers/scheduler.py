from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from enquirybot.database import get_db
from enquirybot.dependencies import get_publisher, get_whatsapp_client
from enquirybot.schemas.scheduler import SweepResponse
from enquirybot.services.events import EventPublisher
from enquirybot.services.followup_service import run_follow_up_sweep
from enquirybot.services.whatsapp_service import WhatsAppClient
from enquirybot.timeutils import utcnow

router = APIRouter()


@router.post("/scheduler/run", response_model=SweepResponse)
async def run_scheduler(
    db: Session = Depends(get_db),
    client: WhatsAppClient = Depends(get_whatsapp_client),
    publisher: EventPublisher = Depends(get_publisher),
):
    """Run one follow-up sweep now."""
    results = await run_follow_up_sweep(db, client, publisher, utcnow())
    return SweepResponse(**results)
