"""Enquiry state machine driven by bot flow definitions.

One call to ``BotEngine.handle_turn`` consumes one buffered turn. Every step
sends first and persists state afterwards, so a failed send leaves the
enquiry where it was and the next inbound message retries the step.
"""

from typing import Callable, Optional

from sqlalchemy.orm import Session

from enquirybot.config import settings
from enquirybot.logging_config import bind_logger, get_logger
from enquirybot.models import BotNode, Enquiry, Message
from enquirybot.services.buffer_service import BufferedTurn
from enquirybot.services.enquiry_service import (
    EnquiryStatus,
    close_enquiry,
    create_enquiry,
    extract_project_from_url,
    fill_template,
    get_latest_enquiry,
    is_terminal,
    is_valid_email,
    restart_enquiry,
    set_field,
    touch,
)
from enquirybot.services.flow_store import (
    END,
    FlowConfigurationError,
    FlowGraph,
    FlowIntegrityError,
    load_active_graph,
    node_options,
)
from enquirybot.services.log_service import record_log
from enquirybot.services.message_service import get_recent_outgoing, is_stuck_prompt
from enquirybot.services.messages_catalog import (
    INVALID_EMAIL_TEXT,
    RESUME_FALLBACK_TEXT,
    REVIEW_THANKS_TEXT,
    STUCK_END_TEXT,
    localized,
)
from enquirybot.services.send_service import Credentials, MessageSender
from enquirybot.services.whatsapp_service import WhatsAppAPIError
from enquirybot.timeutils import seconds_between, utcnow

logger = get_logger("bot_engine")

STUCK_CONTINUE = "stuck_continue"
STUCK_END = "stuck_end"
FOLLOWUP_YES = "followup_yes"
FOLLOWUP_NO = "followup_no"
RATING_PREFIX = "rate_"

SYSTEM_BUTTON_IDS = {STUCK_CONTINUE, STUCK_END, FOLLOWUP_YES, FOLLOWUP_NO}


def is_system_button(option_id: str | None) -> bool:
    if not option_id:
        return False
    return option_id in SYSTEM_BUTTON_IDS or parse_rating(option_id) is not None


def parse_rating(option_id: str | None) -> int | None:
    if not option_id or not option_id.startswith(RATING_PREFIX):
        return None
    try:
        rating = int(option_id[len(RATING_PREFIX):])
    except ValueError:
        return None
    return rating if 1 <= rating <= 5 else None


def should_skip(enquiry: Enquiry, node: BotNode) -> bool:
    field = (node.save_to_field or "").lower()
    if field == "name":
        return bool(enquiry.skip_name)
    if field == "email":
        return bool(enquiry.skip_email)
    return False


class BotEngine:
    def __init__(
        self,
        db: Session,
        sender: MessageSender,
        *,
        now_func: Callable = utcnow,
        cool_off_minutes: Optional[int] = None,
    ):
        self.db = db
        self.sender = sender
        self.now_func = now_func
        self.cool_off_minutes = cool_off_minutes if cool_off_minutes is not None else settings.cool_off_minutes

    async def handle_turn(self, turn: BufferedTurn, credentials: Credentials) -> list[Message]:
        """Advance the enquiry for one turn; returns the outbound messages sent."""
        replies: list[Message] = []
        log = bind_logger("bot_engine", customer_phone=turn.customer_phone, recipient_id=turn.recipient_id)
        try:
            await self._run(turn, credentials, replies, log)
        except (FlowConfigurationError, FlowIntegrityError) as exc:
            self.db.rollback()
            log.error("Bot turn halted", context={"error": str(exc), **exc.context})
            record_log(self.db, "error", f"Bot halted for {turn.customer_phone} on {turn.recipient_id}: {exc}")
        except WhatsAppAPIError as exc:
            self.db.rollback()
            log.warning("Bot turn abandoned after provider error", context={"error": str(exc), **exc.to_context()})
        return replies

    async def _run(self, turn: BufferedTurn, credentials: Credentials, replies: list[Message], log) -> None:
        now = self.now_func()
        option_id = turn.option_id
        enquiry = get_latest_enquiry(self.db, turn.customer_phone, turn.recipient_id)

        if option_id == STUCK_CONTINUE:
            await self._resume_after_stuck(enquiry, turn, credentials, replies, now)
            return
        if option_id == STUCK_END:
            await self._end_after_stuck(enquiry, turn, credentials, replies, now, log)
            return
        rating = parse_rating(option_id)
        if rating is not None:
            await self._record_rating(enquiry, rating, credentials, replies, now, log)
            return

        graph = load_active_graph(self.db, turn.recipient_id)

        if option_id in (FOLLOWUP_YES, FOLLOWUP_NO):
            await self._answer_completion_follow_up(enquiry, graph, option_id, credentials, replies, log)
            return

        if enquiry is not None and is_terminal(enquiry):
            elapsed = seconds_between(enquiry.updated_at, now) or 0
            if elapsed < self.cool_off_minutes * 60:
                log.info("Cool-off active, ignoring message", context={"enquiry_id": str(enquiry.id)})
                return
            start_key = graph.start_node.node_key
            if enquiry.status == EnquiryStatus.CLOSED.value:
                enquiry = create_enquiry(
                    self.db,
                    customer_phone=turn.customer_phone,
                    recipient_id=turn.recipient_id,
                    state=start_key,
                    now=now,
                    previous=enquiry,
                    contact_name=turn.contact_name,
                )
            else:
                restart_enquiry(enquiry, start_key, now)
            log.info("Cool-off expired, restarting flow", context={"enquiry_id": str(enquiry.id)})
            await self._start(enquiry, graph, turn, credentials, replies)
            return

        if enquiry is None or enquiry.status == EnquiryStatus.CLOSED.value:
            enquiry = create_enquiry(
                self.db,
                customer_phone=turn.customer_phone,
                recipient_id=turn.recipient_id,
                state=graph.start_node.node_key,
                now=now,
                previous=enquiry,
                contact_name=turn.contact_name,
            )
            await self._start(enquiry, graph, turn, credentials, replies)
            return

        await self._advance(enquiry, graph, turn, credentials, replies, log)

    async def _advance(self, enquiry: Enquiry, graph: FlowGraph, turn: BufferedTurn, credentials, replies, log) -> None:
        text = turn.combined_body or ""
        option_id = turn.option_id

        project = extract_project_from_url(text)
        if project:
            enquiry.project_name = project
            enquiry.page_url = text
            touch(enquiry, self.now_func())
            self.db.commit()
            log.info("Project detected mid-flow", context={"project_name": project})
            return

        current = graph.resolve(enquiry.conversation_state)

        if should_skip(enquiry, current):
            await self._enter(enquiry, graph, self._next_key(current), current.node_key, credentials, replies)
            return

        if current.message_type == "text":
            if option_id and graph.has(option_id):
                next_key = option_id
            else:
                if current.save_to_field:
                    answer = text.strip()
                    field = current.save_to_field
                    if answer.lower() == "skip":
                        set_field(enquiry, field, "")
                    elif field.lower() == "email":
                        candidate = answer.lower()
                        if not is_valid_email(candidate):
                            await self._reprompt(enquiry, current, credentials, replies)
                            return
                        set_field(enquiry, field, candidate)
                    else:
                        set_field(enquiry, field, answer)
                next_key = self._next_key(current)
        else:
            if not option_id:
                log.info("Free text at a choice node, waiting for a selection", context={"node": current.node_key})
                return
            if not graph.has(option_id):
                raise FlowIntegrityError(option_id, current.node_key, graph.flow.id)
            if current.save_to_field:
                set_field(enquiry, current.save_to_field, turn.last_event.option_title or text)
            next_key = option_id

        await self._enter(enquiry, graph, next_key, current.node_key, credentials, replies)

    @staticmethod
    def _next_key(node: BotNode) -> str:
        if not node.next_node_key:
            raise FlowConfigurationError("Node has no next node", node_key=node.node_key)
        return node.next_node_key

    def _mark_node_sent(self, enquiry: Enquiry, key: str) -> None:
        now = self.now_func()
        enquiry.conversation_state = key
        enquiry.last_node_sent_at = now
        enquiry.node_follow_up_sent = False
        touch(enquiry, now)

    async def _start(self, enquiry: Enquiry, graph: FlowGraph, turn: BufferedTurn, credentials, replies) -> None:
        start = graph.start_node
        project = extract_project_from_url(turn.combined_body)
        if project:
            enquiry.project_name = project
            enquiry.page_url = turn.combined_body

        replies.append(await self._send_node(enquiry, start, credentials))
        self._mark_node_sent(enquiry, start.node_key)
        self.db.commit()

        # A plain greeting flows straight into the first question
        if start.message_type == "text" and not start.save_to_field and start.next_node_key:
            await self._enter(enquiry, graph, start.next_node_key, start.node_key, credentials, replies)

    async def _enter(
        self,
        enquiry: Enquiry,
        graph: FlowGraph,
        key: str,
        from_key: Optional[str],
        credentials: Credentials,
        replies: list[Message],
    ) -> None:
        """Move to ``key``, passing silently through skippable nodes."""
        visited: set[str] = set()
        while True:
            if key == END:
                await self._finish(enquiry, graph, credentials, replies)
                return
            node = graph.resolve(key, from_key=from_key)
            if should_skip(enquiry, node):
                if key in visited:
                    raise FlowConfigurationError("Skip chain loops", node_key=key)
                visited.add(key)
                from_key, key = key, self._next_key(node)
                continue
            replies.append(await self._send_node(enquiry, node, credentials))
            self._mark_node_sent(enquiry, key)
            self.db.commit()
            return

    async def _finish(self, enquiry: Enquiry, graph: FlowGraph, credentials, replies) -> None:
        if not enquiry.end_message_sent:
            end_node = graph.get(END)
            if end_node is not None:
                replies.append(await self._send_node(enquiry, end_node, credentials))
            enquiry.end_message_sent = True
        close_enquiry(enquiry, self.now_func(), status=None)
        self.db.commit()
        logger.info(
            "Bot flow ended",
            extra={"context": {"enquiry_id": str(enquiry.id), "customer_phone": enquiry.customer_phone}},
        )

    async def _send_node(self, enquiry: Enquiry, node: BotNode, credentials: Credentials) -> Message:
        text = fill_template(node.message_text, enquiry)
        to = enquiry.customer_phone
        if node.message_type == "text":
            return await self.sender.send_text(credentials, to, text)
        if node.message_type == "buttons":
            buttons = [{"id": option.id, "title": option.title} for option in node_options(node)]
            return await self.sender.send_buttons(credentials, to, text, buttons)
        if node.message_type == "list":
            sections = []
            for section in node.list_sections or []:
                rows = []
                for row in section.get("rows") or []:
                    wire_row = {"id": row.get("next_node_key"), "title": row.get("title")}
                    if row.get("description"):
                        wire_row["description"] = row["description"]
                    rows.append(wire_row)
                sections.append({"title": section.get("title") or "", "rows": rows})
            return await self.sender.send_list(credentials, to, text, node.list_button_text or "Options", sections)
        raise FlowConfigurationError("Unknown node type", node_key=node.node_key, message_type=node.message_type)

    async def _reprompt(self, enquiry: Enquiry, node: BotNode, credentials, replies) -> None:
        prompt = fill_template(node.message_text, enquiry)
        body = f"{INVALID_EMAIL_TEXT}\n\n{prompt}" if prompt else INVALID_EMAIL_TEXT
        replies.append(await self.sender.send_text(credentials, enquiry.customer_phone, body))
        touch(enquiry, self.now_func())
        self.db.commit()

    async def _resume_after_stuck(self, enquiry, turn: BufferedTurn, credentials, replies, now) -> None:
        history = get_recent_outgoing(self.db, turn.customer_phone, turn.recipient_id, limit=20)
        target = next((message for message in history if not is_stuck_prompt(message)), None)
        if target is None:
            language = enquiry.language if enquiry else "en"
            fallback = localized(RESUME_FALLBACK_TEXT, language)
            replies.append(await self.sender.send_text(credentials, turn.customer_phone, fallback, system=True))
        else:
            replies.append(await self.sender.replay(credentials, turn.customer_phone, target))

        if enquiry is not None:
            enquiry.last_stuck_follow_up_sent_at = now
            touch(enquiry, now)
            self.db.commit()

    async def _end_after_stuck(self, enquiry, turn: BufferedTurn, credentials, replies, now, log) -> None:
        if enquiry is None:
            log.warning("End chat pressed without an enquiry")
            return
        bye_text = localized(STUCK_END_TEXT, enquiry.language)
        replies.append(await self.sender.send_text(credentials, turn.customer_phone, bye_text, system=True))
        close_enquiry(enquiry, now)
        self.db.commit()
        log.info("Enquiry closed from stuck prompt", context={"enquiry_id": str(enquiry.id)})

    async def _record_rating(self, enquiry, rating: int, credentials, replies, now, log) -> None:
        if enquiry is None:
            log.warning("Rating received without an enquiry", context={"rating": rating})
            return
        enquiry.review_rating = rating
        enquiry.review_status = "RECEIVED"
        touch(enquiry, now)
        self.db.commit()
        log.info("Review rating recorded", context={"enquiry_id": str(enquiry.id), "rating": rating})
        replies.append(
            await self.sender.send_text(credentials, enquiry.customer_phone, REVIEW_THANKS_TEXT, system=True)
        )

    async def _answer_completion_follow_up(
        self,
        enquiry,
        graph: FlowGraph,
        option_id: str,
        credentials,
        replies,
        log,
    ) -> None:
        if enquiry is None:
            log.warning("Completion follow-up answer without an enquiry", context={"option_id": option_id})
            return
        if option_id == FOLLOWUP_YES:
            enquiry.agent_contacted = True
            target = graph.flow.completion_follow_up_yes_node_key
        else:
            enquiry.agent_contacted = False
            enquiry.needs_immediate_attention = True
            target = graph.flow.completion_follow_up_no_node_key
        touch(enquiry, self.now_func())
        self.db.commit()

        if not target:
            log.info("No node configured for completion follow-up answer", context={"option_id": option_id})
            return
        node = graph.resolve(target, from_key=option_id)
        replies.append(await self._send_node(enquiry, node, credentials))
        enquiry.end_message_sent = False
        enquiry.ended_at = None
        self._mark_node_sent(enquiry, target)
        self.db.commit()
