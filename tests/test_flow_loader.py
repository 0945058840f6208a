import pytest

from enquirybot.models import BotFlow, BotNode, PhoneNumber
from enquirybot.services.flow_loader import FlowLoadError, load_flow, load_flow_file, parse_flow, read_flow_file
from enquirybot.services.flow_store import (
    END,
    FlowConfigurationError,
    FlowGraph,
    FlowIntegrityError,
    get_active_flow,
    node_options,
)

from conftest import BUSINESS_ID


def _flow_data(**overrides) -> dict:
    data = {
        "name": "Mini flow",
        "start_node_key": "ask_name",
        "nodes": [
            {"node_key": "ask_name", "message_text": "Your name?", "save_to_field": "name", "next_node_key": "ask_goal"},
            {
                "node_key": "ask_goal",
                "message_type": "buttons",
                "message_text": "Buy or rent?",
                "buttons": [
                    {"title": "Buy", "next_node_key": "thanks"},
                    {"title": "Rent", "next_node_key": END},
                ],
            },
            {"node_key": "thanks", "message_text": "Thanks!", "next_node_key": END},
        ],
    }
    data.update(overrides)
    return data


class TestFlowGraph:
    def test_validate_reports_dangling_references(self):
        flow = BotFlow(name="Broken", start_node_key="missing", completion_follow_up_yes_node_key="nowhere")
        nodes = [BotNode(node_key="a", message_type="text", next_node_key="b", buttons=[], list_sections=[])]

        problems = FlowGraph(flow, nodes).validate()

        assert "start node 'missing' is missing" in problems
        assert "node 'a' points to missing node 'b'" in problems
        assert "completion_follow_up_yes_node_key points to missing node 'nowhere'" in problems

    def test_validate_rejects_options_sharing_a_target(self):
        flow = BotFlow(name="Shared", start_node_key="a")
        nodes = [
            BotNode(
                node_key="a",
                message_type="buttons",
                buttons=[{"title": "Yes", "next_node_key": END}, {"title": "No", "next_node_key": END}],
                list_sections=[],
            )
        ]

        assert FlowGraph(flow, nodes).validate() == ["node 'a' has more than one option targeting 'END'"]

    def test_resolve_missing_key_raises_integrity_error(self):
        graph = FlowGraph(BotFlow(name="Empty", start_node_key="a"), [])

        with pytest.raises(FlowIntegrityError) as exc_info:
            graph.resolve("ghost", from_key="a")

        assert exc_info.value.missing_key == "ghost"
        assert exc_info.value.current_node_key == "a"
        with pytest.raises(FlowConfigurationError):
            graph.start_node

    def test_list_options_use_row_targets(self):
        node = BotNode(
            node_key="pick",
            message_type="list",
            list_sections=[{"title": "Times", "rows": [{"title": "Now", "next_node_key": END, "description": "ASAP"}]}],
        )

        options = node_options(node)

        assert [(option.id, option.title, option.description) for option in options] == [(END, "Now", "ASAP")]


class TestParseFlow:
    def test_too_many_buttons_is_rejected(self):
        data = _flow_data()
        data["nodes"][1]["buttons"] = [{"title": f"Option {i}", "next_node_key": f"n{i}"} for i in range(4)]

        with pytest.raises(FlowLoadError) as exc_info:
            parse_flow(data)

        assert any("at most 3 buttons" in problem for problem in exc_info.value.problems)

    def test_long_button_title_is_rejected(self):
        data = _flow_data()
        data["nodes"][1]["buttons"][0]["title"] = "A button title that is far too long"

        with pytest.raises(FlowLoadError):
            parse_flow(data)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FlowLoadError):
            read_flow_file(tmp_path / "absent.yaml")


class TestLoadFlow:
    def test_seed_flow_loads_and_activates(self, db, business):
        phone = db.query(PhoneNumber).filter(PhoneNumber.phone_number_id == BUSINESS_ID).one()

        assert phone.active_bot_flow_id == business.flow.id
        assert get_active_flow(db, BUSINESS_ID).start_node_key == "welcome"
        graph = FlowGraph.load(db, business.flow)
        assert graph.validate() == []
        assert graph.start_node.next_node_key == "ask_name"

    def test_reload_replaces_nodes(self, db):
        first = load_flow(db, parse_flow(_flow_data()))
        data = _flow_data()
        data["nodes"][2]["message_text"] = "Thank you!"

        second = load_flow(db, parse_flow(data))

        assert second.id == first.id
        assert db.query(BotFlow).count() == 1
        assert db.query(BotNode).count() == 3
        thanks = db.query(BotNode).filter(BotNode.node_key == "thanks").one()
        assert thanks.message_text == "Thank you!"

    def test_duplicate_keys_are_rejected(self, db):
        data = _flow_data()
        data["nodes"].append({"node_key": "thanks", "message_text": "Again"})

        with pytest.raises(FlowLoadError) as exc_info:
            load_flow(db, parse_flow(data))

        assert exc_info.value.problems == ["node 'thanks' is defined twice"]
        assert db.query(BotFlow).count() == 0

    def test_dangling_reference_is_rejected(self, db):
        data = _flow_data()
        data["nodes"][0]["next_node_key"] = "ask_phone"

        with pytest.raises(FlowLoadError) as exc_info:
            load_flow(db, parse_flow(data))

        assert exc_info.value.problems == ["node 'ask_name' points to missing node 'ask_phone'"]

    def test_yaml_file_round_trip(self, db, tmp_path):
        path = tmp_path / "mini.yaml"
        path.write_text(
            "name: Yaml flow\n"
            "start_node_key: hello\n"
            "nodes:\n"
            "  - node_key: hello\n"
            "    message_text: Hello {{name}}\n"
            "    next_node_key: END\n",
            encoding="utf-8",
        )

        flow = load_flow_file(db, path)

        assert flow.name == "Yaml flow"
        assert db.query(BotNode).one().message_text == "Hello {{name}}"

    def test_unknown_business_number(self, db):
        with pytest.raises(FlowConfigurationError):
            get_active_flow(db, "no-such-number")
