from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from enquirybot.config import settings
from enquirybot.database import init_db
from enquirybot.dependencies import get_message_buffer, get_publisher, get_whatsapp_client
from enquirybot.logging_config import get_logger, setup_logging
from enquirybot.routers import media, scheduler, webhook, ws
from enquirybot.services.scheduler import FollowUpScheduler, is_scheduler_enabled

setup_logging(settings.log_level)
logger = get_logger("main")

app = FastAPI(
    title="Enquiry Bot",
    description="WhatsApp Business enquiry bot backend",
    version="0.1.0",
)

cors_origins = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)
app.include_router(media.router)
app.include_router(ws.router)
app.include_router(scheduler.router)

_follow_up_scheduler: FollowUpScheduler | None = None


@app.on_event("startup")
async def startup() -> None:
    global _follow_up_scheduler
    init_db()
    if not is_scheduler_enabled():
        logger.info("Follow-up scheduler disabled")
        return
    if _follow_up_scheduler is None:
        _follow_up_scheduler = FollowUpScheduler(get_whatsapp_client(), get_publisher())
    _follow_up_scheduler.start()


@app.on_event("shutdown")
async def shutdown() -> None:
    global _follow_up_scheduler
    if _follow_up_scheduler is not None:
        await _follow_up_scheduler.stop()
        _follow_up_scheduler = None
    await get_message_buffer().shutdown()


@app.get("/health")
async def health():
    return {"status": "ok"}
