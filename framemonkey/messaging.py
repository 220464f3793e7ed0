"""
Wire protocol between the host and the in-frame helpers.

Every message is a JSON-serializable dict with a ``type`` discriminator.
Frames queue outbound messages in ``window.__framemonkeyOutbox``; the host
drains that queue and wraps each entry in a Message carrying the frame it
came from, which is what authenticity checks compare against.
"""

from typing import Any, Dict, List, Optional

from framemonkey.error_reporter import logger

# Menu command protocol
REGISTER_MENU_COMMAND = "register-menu-command"
UNREGISTER_MENU_COMMAND = "unregister-menu-command"
EXECUTE_COMMAND = "execute-command"
SCRIPT_INFO = "script-info"

# Capability bridge (frame -> host)
SET_VALUE = "set-value"
DELETE_VALUE = "delete-value"
GET_VALUE = "get-value"
LIST_VALUES = "list-values"
RESOURCE_REQUEST = "resource-request"
XHR_REQUEST = "xhr-request"
XHR_ABORT = "xhr-abort"
NOTIFICATION = "notification"
OPEN_IN_TAB = "open-in-tab"
SET_CLIPBOARD = "set-clipboard"
LOG = "log"

# Host -> frame
REPLY = "reply"
XHR_EVENT = "xhr-event"

FRAME_TO_HOST = frozenset({
    REGISTER_MENU_COMMAND, UNREGISTER_MENU_COMMAND, SCRIPT_INFO,
    SET_VALUE, DELETE_VALUE, GET_VALUE, LIST_VALUES, RESOURCE_REQUEST,
    XHR_REQUEST, XHR_ABORT, NOTIFICATION, OPEN_IN_TAB, SET_CLIPBOARD, LOG,
})
HOST_TO_FRAME = frozenset({EXECUTE_COMMAND, REPLY, XHR_EVENT})
KNOWN_TYPES = FRAME_TO_HOST | HOST_TO_FRAME

MENU_TYPES = frozenset({REGISTER_MENU_COMMAND, UNREGISTER_MENU_COMMAND, SCRIPT_INFO})


class Message:
    """An inbound message and the frame it was drained from."""

    __slots__ = ("type", "data", "source")

    def __init__(self, data: Dict[str, Any], source=None):
        self.type = data.get("type")
        self.data = data
        self.source = source

    @property
    def script_id(self) -> Optional[str]:
        return self.data.get("scriptId")

    @property
    def request_id(self):
        return self.data.get("requestId")

    def get(self, key, default=None):
        return self.data.get(key, default)

    def __repr__(self):
        source_id = getattr(self.source, "frame_id", None)
        return f"<Message {self.type} from {source_id}>"


def parse_messages(raw_items, source) -> List[Message]:
    """
    Turn raw outbox entries into Messages, dropping anything that is not a
    dict or not a known frame-to-host type.
    """
    messages = []
    for item in raw_items or []:
        if not isinstance(item, dict):
            continue
        kind = item.get("type")
        if kind not in FRAME_TO_HOST:
            logger.debug(f"[BRIDGE] Ignoring message of type {kind!r}")
            continue
        messages.append(Message(item, source))
    return messages


def reply(request_id, value=None, error=None) -> Dict[str, Any]:
    message = {"type": REPLY, "requestId": request_id, "value": value}
    if error is not None:
        message["error"] = str(error)
    return message


def xhr_event(request_id, event, response=None) -> Dict[str, Any]:
    return {"type": XHR_EVENT, "requestId": request_id, "event": event, "response": response}


def execute_command(command_id) -> Dict[str, Any]:
    return {"type": EXECUTE_COMMAND, "id": command_id}
