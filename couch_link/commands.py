"""
Command protocol for the Couch Link command channel.

Messages are UTF-8 JSON objects naming a command category and an action:

    {"type": "presentation", "action": "left"}
    {"type": "cursor", "action": "move", "deltaX": 10, "deltaY": -3}

Some mobile clients wrap the command in a string field instead:

    {"data": "{\\"type\\": \\"cursor\\", \\"action\\": \\"left_click\\"}"}

Both shapes are unwrapped to a CommandEnvelope and handed to the
CommandDispatcher, which drives the input backend.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from .errors import MalformedCommand
from .input_handler import BUTTON_LEFT, BUTTON_RIGHT, InputHandler

logger = logging.getLogger(__name__)


class CommandType(str, Enum):
    PRESENTATION = "presentation"
    CURSOR = "cursor"


# Slide navigation keys (xdotool names)
PRESENTATION_KEYS = {
    "left": "Left",
    "right": "Right",
}

CLICK_BUTTONS = {
    "left_click": BUTTON_LEFT,
    "right_click": BUTTON_RIGHT,
}

SCROLL_DIRECTIONS = ("up", "down")


@dataclass
class CommandEnvelope:
    """A parsed command: category, action and any extra parameters."""
    type: CommandType
    action: str
    params: Dict[str, Any] = field(default_factory=dict)


def _envelope_from(value: Any) -> Optional[CommandEnvelope]:
    """Build an envelope if value carries string type and action fields."""
    if not isinstance(value, dict):
        return None

    msg_type = value.get("type")
    action = value.get("action")
    if not isinstance(msg_type, str) or not isinstance(action, str):
        return None

    try:
        command_type = CommandType(msg_type)
    except ValueError:
        raise MalformedCommand(f"Unknown message type: {msg_type}") from None

    params = {k: v for k, v in value.items() if k not in ("type", "action")}
    return CommandEnvelope(type=command_type, action=action, params=params)


def parse_envelope(message: str) -> CommandEnvelope:
    """
    Parse one command-channel message.

    The direct form is tried first; failing that, a string "data" field
    is parsed again as a nested message.

    Raises:
        MalformedCommand: if the message is not JSON or has neither shape
    """
    try:
        value = json.loads(message)
    except (json.JSONDecodeError, RecursionError) as e:
        raise MalformedCommand(f"Failed to parse JSON: {e}") from e

    envelope = _envelope_from(value)
    if envelope is not None:
        return envelope

    data = value.get("data") if isinstance(value, dict) else None
    if not isinstance(data, str):
        raise MalformedCommand("Invalid JSON format - missing type/action or data field")

    try:
        inner = json.loads(data)
    except (json.JSONDecodeError, RecursionError) as e:
        raise MalformedCommand(f"Failed to parse inner JSON data: {e}") from e

    envelope = _envelope_from(inner)
    if envelope is None:
        raise MalformedCommand("Invalid inner JSON format - missing type or action")
    return envelope


def _int_param(params: Dict[str, Any], name: str) -> int:
    value = params.get(name)
    # bool is an int subclass; true/false are not valid deltas
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedCommand(f"missing or non-integer '{name}'")
    return value


class CommandDispatcher:
    """
    Map parsed commands to input actions.

    Unknown actions and bad parameters are logged and ignored; nothing
    raised by the input backend escapes dispatch().
    """

    def __init__(self, actuator: Optional[Any] = None):
        """
        Args:
            actuator: Input backend. Defaults to an xdotool InputHandler,
                created on first use.
        """
        self._actuator = actuator

    def _get_actuator(self) -> Any:
        """Get or create the input backend."""
        if self._actuator is None:
            self._actuator = InputHandler()
        return self._actuator

    def dispatch(self, envelope: CommandEnvelope) -> bool:
        """
        Run one command.

        Returns:
            True if an input action was invoked
        """
        try:
            if envelope.type is CommandType.PRESENTATION:
                return self._handle_presentation(envelope)
            return self._handle_cursor(envelope)
        except MalformedCommand as e:
            logger.warning(f"Ignoring {envelope.type.value}/{envelope.action}: {e}")
        except Exception:
            logger.exception(f"Input error on {envelope.type.value}/{envelope.action}")
        return False

    def handle_message(self, message: str) -> bool:
        """Parse and dispatch one raw message. Never raises."""
        try:
            envelope = parse_envelope(message)
        except MalformedCommand as e:
            logger.warning(f"Discarding message: {e}")
            return False
        return self.dispatch(envelope)

    def _handle_presentation(self, envelope: CommandEnvelope) -> bool:
        key = PRESENTATION_KEYS.get(envelope.action)
        if key is None:
            raise MalformedCommand(f"Unknown presentation action: {envelope.action}")

        logger.debug(f"Presentation {envelope.action}: pressing {key}")
        self._get_actuator().key_press(key)
        return True

    def _handle_cursor(self, envelope: CommandEnvelope) -> bool:
        action = envelope.action
        params = envelope.params

        if action in CLICK_BUTTONS:
            logger.debug(f"Cursor {action}")
            self._get_actuator().click(CLICK_BUTTONS[action])
            return True

        if action == "move":
            dx = _int_param(params, "deltaX")
            dy = _int_param(params, "deltaY")
            logger.debug(f"Moving cursor by ({dx}, {dy})")
            self._get_actuator().move_relative(dx, dy)
            return True

        if action == "scroll":
            direction = params.get("direction")
            if direction not in SCROLL_DIRECTIONS:
                raise MalformedCommand(f"scroll direction must be up or down, got {direction!r}")
            delta = _int_param(params, "delta")
            amount = delta if direction == "up" else -delta
            logger.debug(f"Scrolling {direction} by {amount}")
            self._get_actuator().scroll(amount)
            return True

        raise MalformedCommand(f"Unknown cursor action: {action}")
