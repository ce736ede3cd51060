"""Tests for data models and trigger matching logic."""
import pytest
from models.schemas import (
    Connection, EmptyProperties, Flow, HttpProperties, InboundEvent, InputProperties,
    InputType, MessageProperties, Node, NodeType, SendResult, SendStatus, TraceEntry,
    TriggerType,
)


class TestFlowTrigger:
    def test_keyword_case_insensitive(self):
        flow = Flow(name="greeting", trigger_type=TriggerType.KEYWORD, trigger_value="hi")
        assert flow.matches_keyword("Hi")
        assert flow.matches_keyword("  HI  ")
        assert not flow.matches_keyword("hello")

    def test_inactive_never_matches(self):
        flow = Flow(name="greeting", trigger_type=TriggerType.KEYWORD,
                    trigger_value="hi", is_active=False)
        assert not flow.matches_keyword("hi")

    def test_manual_flow_never_matches(self):
        flow = Flow(name="campaign", trigger_type=TriggerType.MANUAL, trigger_value="hi")
        assert not flow.matches_keyword("hi")

    def test_empty_trigger_value(self):
        flow = Flow(name="greeting", trigger_type=TriggerType.KEYWORD, trigger_value="")
        assert not flow.matches_keyword("")


class TestNodeType:
    def test_unknown_type_collapses(self):
        assert NodeType("carousel") == NodeType.UNKNOWN

    def test_known_type(self):
        assert NodeType("http") == NodeType.HTTP


class TestNodeConfig:
    def test_message_properties(self):
        node = Node(flow_id="f", type=NodeType.BUTTON, properties={
            "label": "Pick one", "buttons": [{"text": "A"}, {"text": "B"}],
        })
        props = node.config
        assert isinstance(props, MessageProperties)
        assert props.body == "Pick one"
        assert props.has_options
        assert [b.text for b in props.buttons] == ["A", "B"]

    def test_message_falls_back_to_message_field(self):
        node = Node(flow_id="f", type=NodeType.MESSAGE, properties={"message": "Hello"})
        assert node.config.body == "Hello"
        assert not node.config.has_options

    def test_list_items_alias(self):
        node = Node(flow_id="f", type=NodeType.LIST, properties={
            "listItems": [{"title": "One", "description": "first"}],
            "buttonText": "Choose",
        })
        assert node.config.list_items[0].title == "One"
        assert node.config.button_text == "Choose"

    def test_input_properties(self):
        node = Node(flow_id="f", type=NodeType.INPUT, properties={
            "label": "Age?", "variableName": "age", "inputType": "number",
            "invalidMessage": "Enter a number",
        })
        props = node.config
        assert isinstance(props, InputProperties)
        assert props.input_type == InputType.NUMBER
        assert props.variable_name == "age"
        assert props.prompt == "Age?"

    def test_input_unknown_type_is_text(self):
        node = Node(flow_id="f", type=NodeType.INPUT, properties={"inputType": "date"})
        assert node.config.input_type == InputType.TEXT
        assert node.config.prompt == "Please provide your input:"

    def test_http_properties(self):
        node = Node(flow_id="f", type=NodeType.HTTP, properties={
            "url": "https://api.example.com", "authType": "bearer",
            "bearerToken": "t", "responseVariable": "api",
        })
        props = node.config
        assert isinstance(props, HttpProperties)
        assert props.method == "GET"
        assert props.response_variable == "api"

    def test_none_properties(self):
        node = Node(flow_id="f", type=NodeType.NOTE, properties=None)
        assert isinstance(node.config, EmptyProperties)

    def test_blank_values_take_defaults(self):
        message = Node(flow_id="f", type=NodeType.LIST, properties={
            "label": None, "message": "Pick one", "buttonText": "", "listItems": None,
        }).config
        assert message.body == "Pick one"
        assert message.button_text == "Select"
        assert message.list_items == []

        http = Node(flow_id="f", type=NodeType.HTTP, properties={
            "url": "https://api.example.com", "method": "", "timeout": "", "body": None,
        }).config
        assert http.method == "GET"
        assert http.timeout is None
        assert http.body is None

        tag = Node(flow_id="f", type=NodeType.TAG, properties={"tags": None, "action": None}).config
        assert tag.tags == []
        assert tag.action == "add"

        assert Node(flow_id="f", type=NodeType.INPUT,
                    properties={"inputType": ""}).config.input_type == InputType.TEXT

    def test_blank_condition_value_is_kept(self):
        props = Node(flow_id="f", type=NodeType.CONDITION, properties={
            "variable": "x", "operator": "equals", "value": "",
        }).config
        assert props.value == ""


class TestNodeConnections:
    @pytest.fixture
    def node(self):
        return Node(flow_id="f", type=NodeType.BUTTON, connections=[
            Connection(targetNodeId="a", buttonIndex=0),
            Connection(targetNodeId="b", buttonIndex=1),
            Connection(targetNodeId="t", sourceHandle="true"),
        ])

    def test_default_next_is_first(self, node):
        assert node.default_next == "a"

    def test_connection_for_index(self, node):
        assert node.connection_for_index(1).target_node_id == "b"
        assert node.connection_for_index(5) is None

    def test_connection_for_handle(self, node):
        assert node.connection_for_handle("true").target_node_id == "t"
        assert node.connection_for_handle("false") is None

    def test_no_connections(self):
        assert Node(flow_id="f", type=NodeType.MESSAGE).default_next is None


class TestMisc:
    def test_inbound_event_alias(self):
        event = InboundEvent.model_validate({"type": "message", "from": "123", "text": "hi"})
        assert event.phone_number == "123"

    def test_trace_entry_frozen(self):
        entry = TraceEntry(node_id="n", node_type="message", action="node_entered")
        with pytest.raises(Exception):
            entry.action = "other"

    def test_send_result_ok(self):
        assert SendResult(status=SendStatus.SENT).ok
        assert SendResult(status=SendStatus.TEST_MODE).ok
        assert not SendResult(status=SendStatus.FAILED).ok
