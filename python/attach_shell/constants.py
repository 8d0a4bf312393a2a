"""Wire-level constants shared by the shell server and its clients."""

from __future__ import annotations

EXITING_MESSAGE = "Shell exiting..."
DEFAULT_HOST = "127.0.0.1"
HANDSHAKE_TIMEOUT_S = 1.0
DEFAULT_FILENAME = "<attach shell>"
LAST_VALUE_NAME = "__"
CONTINUATION_PROMPT = "... "
