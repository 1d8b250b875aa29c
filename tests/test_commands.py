"""
Tests for the command protocol and dispatcher.
"""

import json

import pytest

from couch_link.commands import CommandDispatcher, CommandType, parse_envelope
from couch_link.errors import MalformedCommand
from couch_link.input_handler import BUTTON_LEFT, BUTTON_RIGHT


def nested(payload: dict) -> str:
    return json.dumps({"data": json.dumps(payload)})


COMMANDS = [
    ({"type": "presentation", "action": "left"}, ("key", "Left")),
    ({"type": "presentation", "action": "right"}, ("key", "Right")),
    ({"type": "cursor", "action": "left_click"}, ("click", BUTTON_LEFT)),
    ({"type": "cursor", "action": "right_click"}, ("click", BUTTON_RIGHT)),
    ({"type": "cursor", "action": "move", "deltaX": 10, "deltaY": -3}, ("move", 10, -3)),
    ({"type": "cursor", "action": "scroll", "direction": "up", "delta": 5}, ("scroll", 5)),
    ({"type": "cursor", "action": "scroll", "direction": "down", "delta": 5}, ("scroll", -5)),
]


class TestParseEnvelope:
    """Test both message shapes"""

    def test_direct_form(self):
        envelope = parse_envelope('{"type": "cursor", "action": "move", "deltaX": 1, "deltaY": 2}')
        assert envelope.type is CommandType.CURSOR
        assert envelope.action == "move"
        assert envelope.params == {"deltaX": 1, "deltaY": 2}

    def test_nested_form(self):
        envelope = parse_envelope(nested({"type": "presentation", "action": "right"}))
        assert envelope.type is CommandType.PRESENTATION
        assert envelope.action == "right"

    def test_direct_form_wins_over_data(self):
        message = json.dumps({"type": "presentation", "action": "left", "data": "ignored"})
        assert parse_envelope(message).action == "left"

    @pytest.mark.parametrize("message", [
        "not json",
        "[1, 2, 3]",
        '{"action": "left"}',
        '{"data": 42}',
        '{"data": "not json either"}',
        '{"data": "{\\"type\\": \\"cursor\\"}"}',
        '{"type": "keyboard", "action": "left"}',
        "[" * 100000,
    ])
    def test_malformed(self, message):
        with pytest.raises(MalformedCommand):
            parse_envelope(message)


class TestDispatcher:
    """Test that each command reaches the input backend"""

    @pytest.mark.parametrize("payload,expected", COMMANDS)
    def test_direct(self, actuator, payload, expected):
        dispatcher = CommandDispatcher(actuator)
        assert dispatcher.handle_message(json.dumps(payload)) is True
        assert actuator.calls == [expected]

    @pytest.mark.parametrize("payload,expected", COMMANDS)
    def test_nested(self, actuator, payload, expected):
        dispatcher = CommandDispatcher(actuator)
        assert dispatcher.handle_message(nested(payload)) is True
        assert actuator.calls == [expected]

    @pytest.mark.parametrize("payload", [
        {"type": "presentation", "action": "up"},
        {"type": "cursor", "action": "double_click"},
        {"type": "cursor", "action": "move", "deltaX": 10},
        {"type": "cursor", "action": "move", "deltaX": "10", "deltaY": 0},
        {"type": "cursor", "action": "move", "deltaX": True, "deltaY": 0},
        {"type": "cursor", "action": "scroll", "direction": "sideways", "delta": 1},
        {"type": "cursor", "action": "scroll", "direction": "up"},
    ])
    def test_invalid_commands_are_ignored(self, actuator, payload):
        dispatcher = CommandDispatcher(actuator)
        assert dispatcher.handle_message(json.dumps(payload)) is False
        assert actuator.calls == []

    def test_garbage_never_raises(self, actuator):
        dispatcher = CommandDispatcher(actuator)
        assert dispatcher.handle_message("\x00\x01garbage") is False
        assert actuator.calls == []

    def test_deeply_nested_data_is_ignored(self, actuator):
        dispatcher = CommandDispatcher(actuator)
        assert dispatcher.handle_message(json.dumps({"data": "[" * 100000})) is False
        assert actuator.calls == []

    def test_backend_errors_are_contained(self):
        class Broken:
            def key_press(self, key):
                raise OSError("display gone")

        dispatcher = CommandDispatcher(Broken())
        assert dispatcher.handle_message('{"type": "presentation", "action": "left"}') is False
