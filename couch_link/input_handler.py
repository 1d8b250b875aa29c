"""
xdotool actuation backend.

Every action shells out to the xdotool binary, so nothing stays resident
between commands. Pointer motion is relative only: phones send deltas.
"""

import logging
import shutil
import subprocess

logger = logging.getLogger(__name__)

# xdotool button numbers
BUTTON_LEFT = 1
BUTTON_RIGHT = 3
WHEEL_UP = 4
WHEEL_DOWN = 5

XDOTOOL_TIMEOUT = 2


class InputHandler:
    """Drive the local X session through xdotool."""

    def __init__(self, binary: str = "xdotool"):
        path = shutil.which(binary)
        if path is None:
            raise RuntimeError(
                f"{binary} not found on PATH. Install it first, e.g.\n"
                f"  sudo apt install xdotool"
            )
        self.binary = path

    def _xdotool(self, *args: str) -> bool:
        """Run one xdotool invocation; failures are logged and reported as False."""
        command = [self.binary, *args]
        try:
            subprocess.run(command, check=True, capture_output=True, timeout=XDOTOOL_TIMEOUT)
        except subprocess.TimeoutExpired:
            logger.warning(f"xdotool {' '.join(args)} timed out after {XDOTOOL_TIMEOUT}s")
            return False
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or b"").decode(errors="replace").strip()
            logger.warning(f"xdotool {' '.join(args)} exited with {e.returncode}: {stderr}")
            return False
        return True

    def key_press(self, key: str) -> bool:
        # "--" keeps key names starting with "-" from being read as options
        return self._xdotool("key", "--", key)

    def click(self, button: int = BUTTON_LEFT) -> bool:
        return self._xdotool("click", str(button))

    def move_relative(self, dx: int, dy: int) -> bool:
        """Nudge the pointer by (dx, dy) pixels."""
        return self._xdotool("mousemove_relative", "--", str(dx), str(dy))

    def scroll(self, amount: int) -> bool:
        """
        Turn the vertical wheel.

        Args:
            amount: Wheel clicks; positive is up, negative is down, zero does nothing
        """
        if not amount:
            return True
        wheel = WHEEL_UP if amount > 0 else WHEEL_DOWN
        return self._xdotool("click", "--repeat", str(abs(amount)), str(wheel))
