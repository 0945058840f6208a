import asyncio
from datetime import timedelta

from enquirybot.models import Enquiry, LogEntry, Message, PhoneNumber
from enquirybot.services.bot_engine import BotEngine, is_system_button, parse_rating, should_skip
from enquirybot.services.events import NEW_MESSAGE
from enquirybot.services.flow_store import END, load_active_graph
from enquirybot.services.messages_catalog import (
    INVALID_EMAIL_TEXT,
    REVIEW_THANKS_TEXT,
    STUCK_END_TEXT,
    STUCK_PROMPT_BUTTONS,
    STUCK_PROMPT_TEXT,
)
from enquirybot.services.send_service import MessageSender
from enquirybot.services.whatsapp_service import WhatsAppAPIError
from enquirybot.timeutils import ensure_timezone

from conftest import CUSTOMER, T0


def _engine(db, fake_client, publisher, clock):
    sender = MessageSender(db, fake_client, publisher, now_func=clock)
    return BotEngine(db, sender, now_func=clock)


def _handle(engine, turn, business):
    return asyncio.run(engine.handle_turn(turn, business.credentials))


def _walk_to_purpose(engine, business, make_turn):
    for text in ("Hi", "John Smith", "John@Example.com"):
        engine.now_func.advance(seconds=5)
        _handle(engine, make_turn(text), business)


def _enquiry(db) -> Enquiry:
    return db.query(Enquiry).one()


class TestSystemButtonHelpers:
    def test_system_buttons(self):
        assert is_system_button("stuck_continue") is True
        assert is_system_button("followup_no") is True
        assert is_system_button("rate_3") is True
        assert is_system_button("ask_budget") is False
        assert is_system_button(None) is False

    def test_parse_rating(self):
        assert parse_rating("rate_5") == 5
        assert parse_rating("rate_0") is None
        assert parse_rating("rate_x") is None
        assert parse_rating("ask_budget") is None


class TestFlowStart:
    def test_first_message_sends_greeting_and_first_question(self, db, business, fake_client, publisher, clock, make_turn):
        engine = _engine(db, fake_client, publisher, clock)

        replies = _handle(engine, make_turn("Hi"), business)

        assert len(replies) == 2
        assert fake_client.bodies()[0].startswith("Hello! Thank you for your interest in our project.")
        assert fake_client.bodies()[1] == "May I have your full name?"
        enquiry = _enquiry(db)
        assert enquiry.conversation_state == "ask_name"
        assert enquiry.status == "open"
        assert db.query(Message).filter(Message.direction == "outgoing").count() == 2
        assert publisher.names() == [NEW_MESSAGE, NEW_MESSAGE]

    def test_profile_name_prefills_enquiry(self, db, business, fake_client, publisher, clock, make_turn):
        engine = _engine(db, fake_client, publisher, clock)

        _handle(engine, make_turn("Hi", contact_name="Sam W"), business)

        enquiry = _enquiry(db)
        assert enquiry.name == "Sam W"
        assert enquiry.skip_name is False
        assert fake_client.bodies()[1] == "May I have your full name?"

    def test_project_link_sets_project_name(self, db, business, fake_client, publisher, clock, make_turn):
        engine = _engine(db, fake_client, publisher, clock)

        _handle(engine, make_turn("Hi https://example.com/properties/marina-heights?ref=ad"), business)

        enquiry = _enquiry(db)
        assert enquiry.project_name == "Marina Heights"
        assert "Marina Heights" in fake_client.bodies()[0]

    def test_missing_flow_halts_without_reply(self, db, business, fake_client, publisher, clock, make_turn):
        phone = db.query(PhoneNumber).one()
        phone.active_bot_flow_id = None
        db.commit()
        engine = _engine(db, fake_client, publisher, clock)

        replies = _handle(engine, make_turn("Hi"), business)

        assert replies == []
        assert fake_client.sent == []
        assert db.query(LogEntry).filter(LogEntry.level == "error").count() == 1

    def test_provider_failure_leaves_no_enquiry(self, db, business, fake_client, publisher, clock, make_turn):
        fake_client.fail_with = WhatsAppAPIError("Graph API timeout")
        engine = _engine(db, fake_client, publisher, clock)

        replies = _handle(engine, make_turn("Hi"), business)

        assert replies == []
        assert db.query(Enquiry).count() == 0


class TestFlowAdvance:
    def test_full_walkthrough_reaches_end(self, db, business, fake_client, publisher, clock, make_turn):
        engine = _engine(db, fake_client, publisher, clock)
        _walk_to_purpose(engine, business, make_turn)

        _handle(engine, make_turn(option_id="ask_budget", option_title="Investment"), business)
        _handle(engine, make_turn("2M AED"), business)
        _handle(engine, make_turn(option_id=END, option_title="Call me now"), business)

        enquiry = _enquiry(db)
        assert enquiry.name == "John Smith"
        assert enquiry.email == "john@example.com"
        assert enquiry.budget == "2M AED"
        assert enquiry.extra_fields == {"purpose": "Investment", "contact_time": "Call me now"}
        assert enquiry.conversation_state == END
        assert enquiry.end_message_sent is True
        assert enquiry.ended_at is not None
        assert fake_client.sent[-1]["body"] == "Thank you John Smith! One of our consultants will contact you shortly about our project."

    def test_choice_node_sends_option_ids_as_node_keys(self, db, business, fake_client, publisher, clock, make_turn):
        engine = _engine(db, fake_client, publisher, clock)
        _walk_to_purpose(engine, business, make_turn)

        last = fake_client.sent[-1]
        assert last["kind"] == "buttons"
        assert last["buttons"] == [
            {"id": "ask_bedrooms", "title": "Buy to live"},
            {"id": "ask_budget", "title": "Investment"},
        ]
        assert _enquiry(db).conversation_state == "ask_purpose"

    def test_invalid_email_reprompts_without_advancing(self, db, business, fake_client, publisher, clock, make_turn):
        engine = _engine(db, fake_client, publisher, clock)
        _handle(engine, make_turn("Hi"), business)
        _handle(engine, make_turn("John"), business)

        _handle(engine, make_turn("not-an-email"), business)

        body = fake_client.bodies()[-1]
        assert body.startswith(INVALID_EMAIL_TEXT)
        assert body.endswith("What is your email address? (type *skip* to continue without one)")
        enquiry = _enquiry(db)
        assert enquiry.conversation_state == "ask_email"
        assert enquiry.email is None

    def test_skip_stores_empty_value(self, db, business, fake_client, publisher, clock, make_turn):
        engine = _engine(db, fake_client, publisher, clock)
        _handle(engine, make_turn("Hi"), business)
        _handle(engine, make_turn("John"), business)

        _handle(engine, make_turn("Skip"), business)

        enquiry = _enquiry(db)
        assert enquiry.email == ""
        assert enquiry.conversation_state == "ask_purpose"

    def test_free_text_at_choice_node_is_ignored(self, db, business, fake_client, publisher, clock, make_turn):
        engine = _engine(db, fake_client, publisher, clock)
        _walk_to_purpose(engine, business, make_turn)
        sent_before = len(fake_client.sent)

        _handle(engine, make_turn("I want to invest"), business)

        assert len(fake_client.sent) == sent_before
        assert _enquiry(db).conversation_state == "ask_purpose"

    def test_unknown_option_halts_and_logs(self, db, business, fake_client, publisher, clock, make_turn):
        engine = _engine(db, fake_client, publisher, clock)
        _walk_to_purpose(engine, business, make_turn)
        sent_before = len(fake_client.sent)

        _handle(engine, make_turn(option_id="ask_villa", option_title="Villa"), business)

        assert len(fake_client.sent) == sent_before
        assert _enquiry(db).conversation_state == "ask_purpose"
        log = db.query(LogEntry).one()
        assert log.level == "error"
        assert "ask_villa" in log.message


class TestSkipLogic:
    def test_should_skip_only_for_flagged_fields(self):
        enquiry = Enquiry(skip_name=True, skip_email=False)
        assert should_skip(enquiry, type("Node", (), {"save_to_field": "Name"})()) is True
        assert should_skip(enquiry, type("Node", (), {"save_to_field": "email"})()) is False
        assert should_skip(enquiry, type("Node", (), {"save_to_field": None})()) is False

    def test_returning_contact_skips_name_and_email_as_next_nodes(
        self, db, business, fake_client, publisher, clock, make_turn
    ):
        db.add(
            Enquiry(
                customer_phone=CUSTOMER,
                recipient_id=business.phone_number_id,
                conversation_state=END,
                status="closed",
                name="Jane",
                email="jane@example.com",
                created_at=T0 - timedelta(days=2),
                updated_at=T0 - timedelta(hours=2),
            )
        )
        db.commit()
        engine = _engine(db, fake_client, publisher, clock)

        _handle(engine, make_turn("Hello again"), business)

        assert [item["kind"] for item in fake_client.sent] == ["text", "buttons"]
        latest = db.query(Enquiry).filter(Enquiry.status == "open").one()
        assert latest.skip_name is True
        assert latest.skip_email is True
        assert latest.name == "Jane"
        assert latest.conversation_state == "ask_purpose"
        assert db.query(Enquiry).count() == 2

    def test_skipped_current_node_is_passed_through(self, db, business, fake_client, publisher, clock, make_turn):
        db.add(
            Enquiry(
                customer_phone=CUSTOMER,
                recipient_id=business.phone_number_id,
                conversation_state="ask_name",
                name="Jane",
                skip_name=True,
                created_at=T0,
                updated_at=T0,
            )
        )
        db.commit()
        engine = _engine(db, fake_client, publisher, clock)

        _handle(engine, make_turn("Bob"), business)

        enquiry = _enquiry(db)
        assert enquiry.name == "Jane"
        assert enquiry.conversation_state == "ask_email"
        assert fake_client.bodies() == ["Thanks Jane! What is your email address? (type *skip* to continue without one)"]


class TestCoolOff:
    def _finish_flow(self, engine, business, make_turn):
        _walk_to_purpose(engine, business, make_turn)
        _handle(engine, make_turn(option_id="ask_budget", option_title="Investment"), business)
        _handle(engine, make_turn("2M"), business)
        _handle(engine, make_turn(option_id=END, option_title="Call me now"), business)

    def test_message_inside_window_is_ignored(self, db, business, fake_client, publisher, clock, make_turn):
        engine = _engine(db, fake_client, publisher, clock)
        self._finish_flow(engine, business, make_turn)
        sent_before = len(fake_client.sent)

        clock.advance(minutes=10)
        _handle(engine, make_turn("Hello?"), business)

        assert len(fake_client.sent) == sent_before
        assert _enquiry(db).conversation_state == END

    def test_message_after_window_restarts_same_enquiry(self, db, business, fake_client, publisher, clock, make_turn):
        engine = _engine(db, fake_client, publisher, clock)
        self._finish_flow(engine, business, make_turn)
        sent_before = len(fake_client.sent)

        clock.advance(minutes=61)
        _handle(engine, make_turn("Hello again"), business)

        enquiry = _enquiry(db)
        assert enquiry.conversation_state == "ask_name"
        assert enquiry.end_message_sent is False
        assert enquiry.ended_at is None
        assert enquiry.budget == "2M"
        assert len(fake_client.sent) == sent_before + 2

    def test_end_message_is_sent_once(self, db, business, fake_client, publisher, clock, make_turn):
        engine = _engine(db, fake_client, publisher, clock)
        self._finish_flow(engine, business, make_turn)
        enquiry = _enquiry(db)

        asyncio.run(engine._finish(enquiry, load_active_graph(db, business.phone_number_id), business.credentials, []))

        end_messages = [body for body in fake_client.bodies() if body.startswith("Thank you John Smith!")]
        assert len(end_messages) == 1


class TestSystemButtons:
    def test_continue_replays_last_flow_message(self, db, business, fake_client, publisher, clock, make_turn):
        engine = _engine(db, fake_client, publisher, clock)
        _walk_to_purpose(engine, business, make_turn)
        clock.advance(minutes=3)
        asyncio.run(
            engine.sender.send_buttons(
                business.credentials, CUSTOMER, STUCK_PROMPT_TEXT["en"], STUCK_PROMPT_BUTTONS["en"], system=True
            )
        )
        clock.advance(minutes=1)

        _handle(engine, make_turn(option_id="stuck_continue", option_title="Continue"), business)

        replay = fake_client.sent[-1]
        assert replay["kind"] == "buttons"
        assert [button["id"] for button in replay["buttons"]] == ["ask_bedrooms", "ask_budget"]
        enquiry = _enquiry(db)
        assert ensure_timezone(enquiry.last_stuck_follow_up_sent_at) == clock.now
        assert enquiry.conversation_state == "ask_purpose"

    def test_end_chat_closes_enquiry(self, db, business, fake_client, publisher, clock, make_turn):
        engine = _engine(db, fake_client, publisher, clock)
        _walk_to_purpose(engine, business, make_turn)

        _handle(engine, make_turn(option_id="stuck_end", option_title="End Chat"), business)

        enquiry = _enquiry(db)
        assert enquiry.status == "closed"
        assert enquiry.conversation_state == END
        assert fake_client.bodies()[-1] == STUCK_END_TEXT["en"]

    def test_rating_is_recorded(self, db, business, fake_client, publisher, clock, make_turn):
        db.add(
            Enquiry(
                customer_phone=CUSTOMER,
                recipient_id=business.phone_number_id,
                conversation_state=END,
                review_status="PENDING",
                completion_follow_up_sent=True,
                created_at=T0,
                updated_at=T0,
            )
        )
        db.commit()
        engine = _engine(db, fake_client, publisher, clock)

        _handle(engine, make_turn(option_id="rate_4", option_title="⭐⭐⭐⭐ Good"), business)

        enquiry = _enquiry(db)
        assert enquiry.review_rating == 4
        assert enquiry.review_status == "RECEIVED"
        assert fake_client.bodies() == [REVIEW_THANKS_TEXT]

    def test_completion_follow_up_yes_resumes_configured_node(
        self, db, business, fake_client, publisher, clock, make_turn
    ):
        db.add(
            Enquiry(
                customer_phone=CUSTOMER,
                recipient_id=business.phone_number_id,
                conversation_state=END,
                end_message_sent=True,
                ended_at=T0,
                created_at=T0,
                updated_at=T0,
            )
        )
        db.commit()
        engine = _engine(db, fake_client, publisher, clock)

        _handle(engine, make_turn(option_id="followup_yes", option_title="Yes"), business)

        enquiry = _enquiry(db)
        assert enquiry.agent_contacted is True
        assert enquiry.conversation_state == "agent_reached"
        assert enquiry.end_message_sent is False
        assert fake_client.bodies() == ["Great, we hope the conversation was helpful!"]
