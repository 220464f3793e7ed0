# menu_commands.py
# Host-side proxies of GM_registerMenuCommand entries living inside frames

from typing import Callable, Dict, List, Optional, Tuple

from framemonkey import messaging
from framemonkey.error_reporter import logger
from framemonkey.utils import now_ms

REGISTERED = "registered"
UNREGISTERED = "unregistered"
SCRIPT_SEEN = "script-seen"


class MenuCommandProxy:
    """
    What the host knows about one menu command. The callback itself never
    leaves the frame; execute() asks the frame to run it by id.
    """

    __slots__ = ("id", "script_id", "script_name", "name", "access_key", "frame_id", "registered_at")

    def __init__(self, command_id, script_id, script_name, name, access_key="", frame_id=None):
        self.id = command_id
        self.script_id = script_id
        self.script_name = script_name
        self.name = name
        self.access_key = access_key or ""
        self.frame_id = frame_id
        self.registered_at = now_ms()

    def to_dict(self):
        return {
            "id": self.id,
            "scriptId": self.script_id,
            "scriptName": self.script_name,
            "name": self.name,
            "accessKey": self.access_key,
            "frameId": self.frame_id,
        }

    def __repr__(self):
        return f"<MenuCommandProxy {self.name!r} ({self.script_name}) id={self.id}>"


class MenuCommandRegistry:
    def __init__(self):
        self._commands: Dict[Tuple[str, str], MenuCommandProxy] = {}
        self._frames: Dict[str, object] = {}
        self._live_scripts: Dict[str, Dict[str, str]] = {}
        self._listeners: List[Callable] = []

    # ---- listeners -----------------------------------------------------------
    def add_listener(self, callback: Callable[[str, Optional[MenuCommandProxy]], None]):
        if callback not in self._listeners:
            self._listeners.append(callback)

    def remove_listener(self, callback):
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _notify(self, event, proxy=None):
        for callback in list(self._listeners):
            try:
                callback(event, proxy)
            except Exception as e:
                logger.error(f"[MENU] Listener failed on {event}: {e}")

    # ---- inbound -------------------------------------------------------------
    def handle_message(self, target, message) -> bool:
        """
        Act on a menu message drained from target. Messages whose source is
        not target itself are rejected. Returns True if the message was used.
        """
        if message.source is not target:
            logger.warning(f"[MENU] Rejected {message.type} not sent by its target frame")
            return False

        frame_id = getattr(target, "frame_id", None)
        data = message.data

        if message.type == messaging.REGISTER_MENU_COMMAND:
            return self.register(
                command_id=data.get("id"),
                script_id=data.get("scriptId"),
                script_name=data.get("scriptName") or "",
                name=data.get("name") or "",
                access_key=data.get("accessKey") or "",
                frame=target,
                frame_id=frame_id,
            ) is not None

        if message.type == messaging.UNREGISTER_MENU_COMMAND:
            return self.unregister(data.get("scriptId"), data.get("id"), frame_id=frame_id)

        if message.type == messaging.SCRIPT_INFO:
            script_id = data.get("scriptId")
            if not script_id or not frame_id:
                return False
            self._frames[frame_id] = target
            self._live_scripts.setdefault(frame_id, {})[script_id] = data.get("scriptName") or ""
            self._notify(SCRIPT_SEEN, None)
            return True

        return False

    # ---- registry ------------------------------------------------------------
    def register(self, command_id, script_id, script_name, name, access_key="", frame=None, frame_id=None):
        if not command_id or not script_id:
            logger.warning("[MENU] Registration without id or script id ignored")
            return None

        key = (script_id, command_id)
        if key in self._commands or self.find(command_id) is not None:
            logger.warning(f"[MENU] Duplicate command id {command_id} ignored")
            return None

        proxy = MenuCommandProxy(command_id, script_id, script_name, name, access_key, frame_id)
        self._commands[key] = proxy
        if frame is not None and frame_id:
            self._frames[frame_id] = frame
        logger.info(f"[MENU] Registered '{name}' for {script_name or script_id}")
        self._notify(REGISTERED, proxy)
        return proxy

    def unregister(self, script_id, command_id, frame_id=None) -> bool:
        """Remove a command. With frame_id, only a command registered from that frame."""
        key = (script_id, command_id)
        proxy = self._commands.get(key)
        if proxy is None:
            return False
        if frame_id is not None and proxy.frame_id != frame_id:
            logger.warning(f"[MENU] Rejected unregister of '{proxy.name}' from {frame_id}: registered by {proxy.frame_id}")
            return False
        del self._commands[key]
        logger.info(f"[MENU] Unregistered '{proxy.name}'")
        self._notify(UNREGISTERED, proxy)
        return True

    def unregister_script(self, script_id) -> int:
        keys = [key for key in self._commands if key[0] == script_id]
        for key in keys:
            self._notify(UNREGISTERED, self._commands.pop(key))
        for scripts in self._live_scripts.values():
            scripts.pop(script_id, None)
        if keys:
            logger.info(f"[MENU] Removed {len(keys)} command(s) of {script_id}")
        return len(keys)

    def drop_frame(self, frame_id) -> int:
        """Forget everything registered from frame_id; its in-frame table is gone."""
        keys = [key for key, proxy in self._commands.items() if proxy.frame_id == frame_id]
        for key in keys:
            self._notify(UNREGISTERED, self._commands.pop(key))
        self._live_scripts.pop(frame_id, None)
        self._frames.pop(frame_id, None)
        return len(keys)

    # ---- queries -------------------------------------------------------------
    def find(self, command_id) -> Optional[MenuCommandProxy]:
        for proxy in self._commands.values():
            if proxy.id == command_id:
                return proxy
        return None

    def commands_for_script(self, script_id) -> List[MenuCommandProxy]:
        return [p for p in self._commands.values() if p.script_id == script_id]

    def commands_for_frame(self, frame_id) -> List[MenuCommandProxy]:
        return [p for p in self._commands.values() if p.frame_id == frame_id]

    def all_commands(self) -> List[MenuCommandProxy]:
        return list(self._commands.values())

    def live_scripts(self, frame_id) -> Dict[str, str]:
        return dict(self._live_scripts.get(frame_id, {}))

    # ---- outbound ------------------------------------------------------------
    def execute(self, command_id) -> bool:
        """Ask the owning frame to run the callback registered under command_id."""
        proxy = self.find(command_id)
        if proxy is None:
            logger.warning(f"[MENU] Unknown command {command_id}")
            return False

        frame = self._frames.get(proxy.frame_id)
        if frame is None:
            logger.warning(f"[MENU] Frame of '{proxy.name}' is gone")
            return False

        message = messaging.execute_command(command_id)
        channel = getattr(frame, "channel", None)
        if channel:
            message["channel"] = channel
        try:
            frame.post_message(message)
        except Exception as e:
            logger.error(f"[MENU] Could not execute '{proxy.name}' in {proxy.frame_id}: {e}")
            return False
        logger.debug(f"[MENU] Executed '{proxy.name}'")
        return True
