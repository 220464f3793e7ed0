# injection_coordinator.py
# Drives script injection into target frames: run-at staging, de-duplication,
# navigation detection and retries. Everything here runs on the pump thread
# that calls tick(); worker threads only hand results back through deliver().

import heapq
import itertools
import queue
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional

from selenium.common.exceptions import WebDriverException

from framemonkey import messaging
from framemonkey.capability_api import CapabilityBuilder
from framemonkey.constants import FRAME_ID_ATTR
from framemonkey.error_reporter import logger
from framemonkey.exceptions import CrossOriginAccessError, FrameDetachedError
from framemonkey.frames import content_hash
from framemonkey.gm_prelude import MARKER_JS, marker_id, wrap_script
from framemonkey.injection_ledger import InjectionLedger, assign_target_id
from framemonkey.kv_storage import MemoryStorage
from framemonkey.menu_commands import MenuCommandRegistry
from framemonkey.pattern_matcher import clear_pattern_cache
from framemonkey.resource_loader import ResourceLoader
from framemonkey.retry_utils import call_with_retry
from framemonkey.script_selector import ScriptSelector, group_by_run_at
from framemonkey import script_store
from framemonkey.utils import generate_random_id

UNSEEN = "unseen"
SELECTING = "selecting"
STAGING = "staging"
INJECTING = "injecting"
SETTLED = "settled"

_MIN_SNAPSHOT_HTML = 50

_DOC_TOKEN_JS = """
window.__framemonkeyDoc = window.__framemonkeyDoc || arguments[0];
return window.__framemonkeyDoc;
"""
_READ_DOC_TOKEN_JS = "return window.__framemonkeyDoc || null;"


class Scheduler:
    """Cooperative timers. run_due() fires everything whose time has come."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self._heap = []
        self._seq = itertools.count()
        self._cancelled = set()
        self._keys: Dict[str, int] = {}

    def call_later(self, delay: float, callback: Callable[[], None], key: Optional[str] = None) -> int:
        """Schedule callback. A keyed timer replaces the pending timer with the same key."""
        if key is not None:
            self.cancel_key(key)
        timer_id = next(self._seq)
        heapq.heappush(self._heap, (self.clock() + max(0.0, delay), timer_id, key, callback))
        if key is not None:
            self._keys[key] = timer_id
        return timer_id

    def cancel(self, timer_id: int):
        self._cancelled.add(timer_id)

    def cancel_key(self, key: str):
        timer_id = self._keys.pop(key, None)
        if timer_id is not None:
            self._cancelled.add(timer_id)

    def cancel_prefix(self, prefix: str):
        for key in [k for k in self._keys if k.startswith(prefix)]:
            self.cancel_key(key)

    def pending(self) -> int:
        return len(self._heap) - len(self._cancelled)

    def run_due(self) -> int:
        fired = 0
        now = self.clock()
        while self._heap and self._heap[0][0] <= now:
            _, timer_id, key, callback = heapq.heappop(self._heap)
            if timer_id in self._cancelled:
                self._cancelled.discard(timer_id)
                continue
            if key is not None and self._keys.get(key) == timer_id:
                del self._keys[key]
            try:
                callback()
            except Exception as e:
                logger.error(f"[SCHED] Timer {key or timer_id} failed: {e}")
            fired += 1
        return fired


class FrameSession:
    """Per-frame state for the current navigation epoch."""

    def __init__(self, frame, frame_id):
        self.frame = frame
        self.frame_id = frame_id
        self.state = UNSEEN
        self.url = ""
        self.doc_token = None
        self.doc = None
        self.load_seen = False
        self.load_pending = False
        self.complete_at = None
        self.phases = []
        self.phase = 0
        self.phase_started = False
        self.outstanding = set()
        self.force = False
        self.apis = {}
        self.payloads = {}
        self.abandoned = set()
        self.snapshot = None
        self.polls = 0
        self.polls_without_change = 0
        self.detached = False

    def __repr__(self):
        return f"<FrameSession {self.frame_id} {self.state} {self.url}>"


class InjectionCoordinator:
    """
    Injects matching scripts into attached frames.

    Each frame goes UNSEEN -> SELECTING -> STAGING -> INJECTING -> SETTLED
    per navigation epoch and back to UNSEEN when a load event or the polling
    fallback reports new content. Scripts run in run-at phases; inside a
    phase they are wrapped concurrently and inserted as wrapping completes.
    """

    def __init__(self, store, storage=None, resource_loader=None, menu_registry=None,
                 builder: Optional[CapabilityBuilder] = None, poll_interval=1.0,
                 force_check_every=30, idle_delay=0.1, refresh_delay=0.3, max_retries=3,
                 retry_delay=0.05, clock: Callable[[], float] = time.monotonic,
                 background=True, max_workers=4):
        self.store = store
        self.selector = ScriptSelector(store)
        self.ledger = InjectionLedger()
        self.menu_registry = menu_registry or MenuCommandRegistry()
        self.resource_loader = resource_loader or ResourceLoader()
        self.builder = builder or CapabilityBuilder(
            storage if storage is not None else MemoryStorage(),
            self.resource_loader,
            self.menu_registry,
        )
        self.builder.deliver = self.deliver

        self.poll_interval = poll_interval
        self.force_check_every = max(1, int(force_check_every))
        self.idle_delay = idle_delay
        self.refresh_delay = refresh_delay
        self.max_retries = max(0, int(max_retries))
        self.retry_delay = retry_delay

        self.scheduler = Scheduler(clock)
        self.sessions: Dict[str, FrameSession] = {}
        self._results = queue.Queue()
        self._background = background
        self._wrap_executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="wrap") if background else None
        self._closed = False

        store.add_listener(self._on_store_event)

    @classmethod
    def from_settings(cls, store, settings, storage, **kwargs):
        loader = kwargs.pop("resource_loader", None) or ResourceLoader(timeout=settings.request_timeout)
        registry = kwargs.pop("menu_registry", None) or MenuCommandRegistry()
        builder = CapabilityBuilder(
            storage, loader, registry,
            opener=kwargs.pop("opener", None),
            clipboard=kwargs.pop("clipboard", None),
            notifier=kwargs.pop("notifier", None),
            cookie_source=kwargs.pop("cookie_source", None),
            enforce_connect=settings.enforce_connect,
            request_timeout=settings.request_timeout,
        )
        return cls(
            store,
            resource_loader=loader,
            menu_registry=registry,
            builder=builder,
            poll_interval=settings.poll_interval,
            force_check_every=settings.force_check_every,
            idle_delay=settings.idle_delay,
            refresh_delay=settings.refresh_delay,
            max_retries=settings.max_retries,
            **kwargs
        )

    @property
    def clock(self):
        return self.scheduler.clock

    # ---- threading -----------------------------------------------------------
    def deliver(self, callback: Callable[[], None]):
        """Queue callback to run on the pump thread during the next tick()."""
        self._results.put(callback)

    def _drain_results(self) -> int:
        count = 0
        while True:
            try:
                callback = self._results.get_nowait()
            except queue.Empty:
                return count
            try:
                callback()
            except Exception as e:
                logger.error(f"[COORD] Deferred callback failed: {e}")
            count += 1

    # ---- attach / detach -----------------------------------------------------
    def session_for(self, frame_or_id) -> Optional[FrameSession]:
        if isinstance(frame_or_id, str):
            return self.sessions.get(frame_or_id)
        frame_id = getattr(frame_or_id, "frame_id", None)
        if frame_id and frame_id in self.sessions:
            return self.sessions[frame_id]
        for session in self.sessions.values():
            if session.frame is frame_or_id:
                return session
        return None

    def is_attached(self, frame) -> bool:
        if self.session_for(frame) is not None:
            return True
        try:
            return frame.get_attribute(FRAME_ID_ATTR) in self.sessions
        except (FrameDetachedError, WebDriverException):
            return False

    def attach(self, frame) -> Optional[FrameSession]:
        existing = self.session_for(frame)
        if existing is not None:
            return existing
        try:
            frame_id = assign_target_id(frame)
            frame.frame_id = frame_id
            frame.channel = generate_random_id(24)
            frame.install_load_listener(frame_id)
        except (FrameDetachedError, WebDriverException) as e:
            logger.warning(f"[COORD] Could not attach frame: {e}")
            return None

        session = FrameSession(frame, frame_id)
        self.sessions[frame_id] = session
        logger.info(f"[COORD] Attached {frame_id}")
        self._try_start_epoch(session)
        self._schedule_poll(session)
        return session

    def detach(self, frame_or_id):
        session = self.session_for(frame_or_id)
        if session is None:
            return
        session.detached = True
        self.scheduler.cancel_prefix(session.frame_id + ":")
        for api in session.apis.values():
            for handle in list(api._xhrs.values()):
                handle.abort()
        self.menu_registry.drop_frame(session.frame_id)
        self.ledger.forget_target(session.frame_id)
        self.sessions.pop(session.frame_id, None)
        logger.info(f"[COORD] Detached {session.frame_id}")

    def shutdown(self):
        if self._closed:
            return
        self._closed = True
        for frame_id in list(self.sessions):
            self.detach(frame_id)
        self.store.remove_listener(self._on_store_event)
        if self._wrap_executor is not None:
            self._wrap_executor.shutdown(wait=False)
        self.builder.shutdown()
        self.resource_loader.shutdown()
        logger.info("[COORD] Shut down")

    # ---- pump ----------------------------------------------------------------
    def tick(self) -> None:
        """One pass of the cooperative loop. Call repeatedly from a single thread."""
        if self._closed:
            return
        self._drain_results()
        self.scheduler.run_due()
        for session in list(self.sessions.values()):
            if session.detached:
                continue
            try:
                self._process_messages(session)
                self._process_load_events(session)
                if session.state == UNSEEN:
                    self._try_start_epoch(session)
                self._advance(session)
            except FrameDetachedError:
                logger.info(f"[COORD] {session.frame_id} left the document")
                self.detach(session.frame_id)
            except WebDriverException as e:
                logger.warning(f"[COORD] {session.frame_id}: {e}")
        self._drain_results()

    # ---- messages ------------------------------------------------------------
    def _post(self, session: FrameSession, message: Dict):
        if session.detached:
            return
        message = dict(message)
        message["channel"] = session.frame.channel
        try:
            session.frame.post_message(message)
        except (CrossOriginAccessError, FrameDetachedError, WebDriverException) as e:
            logger.debug(f"[BRIDGE] Could not post {message.get('type')} to {session.frame_id}: {e}")

    def _process_messages(self, session: FrameSession):
        for message in messaging.parse_messages(session.frame.drain_outbox(), session.frame):
            if message.type in messaging.MENU_TYPES:
                self.menu_registry.handle_message(session.frame, message)
                continue
            api = session.apis.get(message.script_id)
            if api is None:
                logger.debug(f"[BRIDGE] {message.type} for unknown script {message.script_id}")
                continue
            reply = api.handle_message(message, post=lambda m, s=session: self._post(s, m))
            if reply is not None:
                self._post(session, reply)

    # ---- navigation ----------------------------------------------------------
    def _process_load_events(self, session: FrameSession):
        if not session.frame.consume_load_events(session.frame_id):
            return
        if session.state == UNSEEN:
            session.load_pending = True
            return
        if session.doc_token and self._read_doc_token(session) == session.doc_token:
            session.load_seen = True
            return
        session.load_pending = True
        self._schedule_refresh(session, "load event")

    def _read_doc_token(self, session):
        try:
            return session.frame.execute(_READ_DOC_TOKEN_JS)
        except CrossOriginAccessError:
            return None

    def _resolve_url(self, session: FrameSession) -> str:
        doc = session.frame.document_state()
        session.doc = doc
        url = (doc or {}).get("href") or ""
        if not url or url == "about:blank":
            url = session.frame.get_src() or ""
        if url == "about:blank":
            return ""
        return url

    def _try_start_epoch(self, session: FrameSession, force=False) -> bool:
        try:
            url = self._resolve_url(session)
        except CrossOriginAccessError:
            url = ""
        if not url:
            return False
        self._start_epoch(session, url, force)
        return True

    def _start_epoch(self, session: FrameSession, url: str, force=False):
        previous_token = session.doc_token
        token = None
        if session.doc is not None:
            try:
                token = session.frame.execute(_DOC_TOKEN_JS, generate_random_id(16))
            except CrossOriginAccessError:
                token = None
        same_document = token is not None and token == previous_token

        if not same_document:
            # the in-frame menu table and GM objects died with the old document
            self.menu_registry.drop_frame(session.frame_id)
            for api in session.apis.values():
                for handle in list(api._xhrs.values()):
                    handle.abort()
            session.apis = {}
            session.load_seen = session.load_pending
        session.load_pending = False
        session.doc_token = token

        epoch = self.ledger.begin_epoch(session.frame_id, url)
        session.url = url
        session.force = force
        session.payloads = {}
        session.abandoned = set()
        session.complete_at = None
        session.phase = 0
        session.phase_started = False
        session.outstanding = set()
        session.polls_without_change = 0
        session.snapshot = self._snapshot(session)

        session.state = SELECTING
        scripts = self.selector.select_for_url(url)

        session.state = STAGING
        session.phases = [(stage, bucket) for stage, bucket in group_by_run_at(scripts).items() if bucket]
        logger.info(
            f"[COORD] {session.frame_id} epoch {epoch}: {url} "
            f"({len(scripts)} script(s){', same document' if same_document else ''})"
        )
        session.state = INJECTING if session.phases else SETTLED

    def _schedule_refresh(self, session: FrameSession, reason: str):
        logger.debug(f"[POLL] {session.frame_id} refresh signal: {reason}")
        self.scheduler.call_later(
            self.refresh_delay, lambda: self._refresh(session), key=f"{session.frame_id}:refresh"
        )

    def _refresh(self, session: FrameSession):
        if session.detached:
            return
        session.state = UNSEEN
        self._try_start_epoch(session)

    def reinject(self, frame_or_id, force=True) -> bool:
        """Re-run selection for a frame. force bypasses marker and ledger checks."""
        session = self.session_for(frame_or_id)
        if session is None:
            return False
        logger.info(f"[COORD] Re-injecting into {session.frame_id}{' (forced)' if force else ''}")
        session.state = UNSEEN
        return self._try_start_epoch(session, force=force)

    # ---- polling fallback ----------------------------------------------------
    def _schedule_poll(self, session: FrameSession):
        self.scheduler.call_later(
            self.poll_interval, lambda: self._poll(session), key=f"{session.frame_id}:poll"
        )

    def _snapshot(self, session: FrameSession):
        frame = session.frame
        src = frame.get_src() or ""
        doc = frame.document_state()
        if doc is None:
            return (src, None, None, "")
        html = frame.document_html() or ""
        digest = content_hash(html) if len(html) > _MIN_SNAPSHOT_HTML else ""
        return (src, doc.get("href"), doc.get("title"), digest)

    @staticmethod
    def _snapshot_changes(old, new) -> List[str]:
        names = ("src", "href", "title", "dom")
        changes = []
        for name, a, b in zip(names, old, new):
            if name == "dom" and (not a or not b):
                continue
            if a != b:
                changes.append(name)
        return changes

    def _poll(self, session: FrameSession):
        if session.detached:
            return
        if not session.frame.is_attached():
            logger.info(f"[POLL] {session.frame_id} removed from the document, stopping")
            self.detach(session.frame_id)
            return

        try:
            session.polls += 1
            snapshot = self._snapshot(session)
            changes = self._snapshot_changes(session.snapshot, snapshot) if session.snapshot else []
            session.snapshot = snapshot

            if changes:
                session.polls_without_change = 0
                self._schedule_refresh(session, ", ".join(changes) + " changed")
            else:
                session.polls_without_change += 1
                if session.polls_without_change >= self.force_check_every:
                    session.polls_without_change = 0
                    self._force_check(session)
        except FrameDetachedError:
            self.detach(session.frame_id)
            return
        except WebDriverException as e:
            logger.debug(f"[POLL] {session.frame_id}: {e}")

        self._schedule_poll(session)

    def _force_check(self, session: FrameSession):
        """Re-verify that every expected script is really in the frame."""
        if session.state != SETTLED or not session.url:
            return
        missing = []
        for script in self.selector.select_for_url(session.url):
            if script.id in session.abandoned:
                continue
            if session.frame.has_marker(marker_id(script.id)):
                self.ledger.mark_injected(session.frame_id, script.id)
                continue
            missing.append(script)
        if not missing:
            return
        logger.info(f"[POLL] {session.frame_id} missing {len(missing)} script(s), re-injecting")
        for script in missing:
            self.inject_script(session.frame, script, force=True)

    # ---- staging -------------------------------------------------------------
    def _trigger_ready(self, session: FrameSession, stage: str) -> bool:
        doc = session.frame.document_state()
        session.doc = doc
        if doc is None:
            # unreachable document: only the frame's load event tells us anything
            return session.load_seen

        ready_state = doc.get("readyState")
        if stage == "document-start":
            return True
        if stage == "document-body":
            return bool(doc.get("hasBody"))
        if stage == "document-end":
            return ready_state in ("interactive", "complete")

        if ready_state != "complete":
            return False
        now = self.clock()
        if session.complete_at is None:
            session.complete_at = now
        return now - session.complete_at >= self.idle_delay

    def _advance(self, session: FrameSession):
        while session.state == INJECTING and not session.detached:
            if session.phase >= len(session.phases):
                session.state = SETTLED
                logger.debug(f"[COORD] {session.frame_id} settled")
                return

            stage, scripts = session.phases[session.phase]
            if not session.phase_started:
                if not self._trigger_ready(session, stage):
                    return
                session.phase_started = True
                session.outstanding = {s.id for s in scripts}
                logger.debug(f"[COORD] {session.frame_id} {stage}: {len(scripts)} script(s)")
                for script in scripts:
                    self._start_wrap(session, script)

            if session.outstanding:
                return
            session.phase += 1
            session.phase_started = False

    def _start_wrap(self, session: FrameSession, script):
        epoch = self.ledger.epoch(session.frame_id)
        if not self._still_enabled(script):
            session.outstanding.discard(script.id)
            return
        if not session.force and self._already_injected(session, script):
            session.outstanding.discard(script.id)
            return
        if self._wrap_executor is None:
            self._on_wrapped(session, epoch, script, *self._preprocess(script), advance=False)
            return
        future = self._wrap_executor.submit(self._preprocess, script)
        future.add_done_callback(
            lambda f: self.deliver(lambda: self._on_wrapped(session, epoch, script, *f.result()))
        )

    def _still_enabled(self, script) -> bool:
        current = self.store.get_script(script.id)
        if current is None or not current.enabled:
            logger.debug(f"[INJECT] Skipping '{script.name}': disabled or removed since selection")
            return False
        return True

    def _preprocess(self, script):
        try:
            return self.resource_loader.preprocess(script), None
        except Exception as e:
            return None, e

    def _on_wrapped(self, session: FrameSession, epoch, script, result, error, advance=True):
        if session.detached or epoch != self.ledger.epoch(session.frame_id):
            return
        try:
            if error is not None:
                logger.error(
                    f"[INJECT] Wrapping '{script.name}' ({script.id}) for {session.frame_id} "
                    f"at {session.url} failed: {error}"
                )
                session.abandoned.add(script.id)
            elif self._still_enabled(script):
                payload = self._payload(session, script, result.processed_code)
                self._insert(session, script, payload, force=session.force)
        except FrameDetachedError:
            self.detach(session.frame_id)
            return
        finally:
            session.outstanding.discard(script.id)
        if advance:
            self._advance(session)

    # ---- injection -----------------------------------------------------------
    def _payload(self, session: FrameSession, script, processed_code: str) -> str:
        api = self.builder.build(script, session.url)
        session.apis[script.id] = api
        payload = wrap_script(api.prelude_js(session.frame_id, session.frame.channel), processed_code)
        session.payloads[script.id] = payload
        return payload

    def _already_injected(self, session: FrameSession, script) -> bool:
        if self.ledger.is_injected(session.frame_id, script.id):
            logger.debug(f"[INJECT] '{script.name}' already recorded for {session.frame_id}")
            return True
        if session.frame.has_marker(marker_id(script.id)):
            logger.debug(f"[INJECT] '{script.name}' marker present in {session.frame_id}")
            self.ledger.mark_injected(session.frame_id, script.id)
            return True
        return False

    def _insert(self, session: FrameSession, script, payload: str, force=False) -> bool:
        if not force and self._already_injected(session, script):
            return False

        frame = session.frame

        def attempt():
            frame.execute(payload)
            frame.execute(MARKER_JS, marker_id(script.id), script.id, script.name)

        def on_retry(attempt_no, exc):
            logger.debug(f"[INJECT] Retrying '{script.name}' ({attempt_no}/{self.max_retries}): {exc}")

        try:
            call_with_retry(
                attempt,
                max_attempts=self.max_retries + 1,
                initial_delay=self.retry_delay,
                exceptions=(WebDriverException,),
                on_retry=on_retry,
            )
        except CrossOriginAccessError:
            logger.info(f"[INJECT] {session.frame_id} not reachable, '{script.name}' waits for the next epoch")
            session.abandoned.add(script.id)
            return False
        except FrameDetachedError:
            raise
        except Exception as e:
            logger.error(
                f"[INJECT] Giving up on '{script.name}' (script {script.id}, frame {session.frame_id}, "
                f"url {session.url}): {e}"
            )
            session.abandoned.add(script.id)
            return False

        self.ledger.mark_injected(session.frame_id, script.id)
        logger.info(f"[INJECT] '{script.name}' -> {session.frame_id} ({script.run_at})")
        return True

    def inject_script(self, frame_or_id, script, force=False) -> bool:
        """
        Wrap and insert one script right now, outside the staged flow.
        Returns True if the script was inserted.
        """
        session = self.session_for(frame_or_id)
        if session is None:
            logger.warning(f"[INJECT] '{script.name}': frame is not attached")
            return False
        if not force and self._already_injected(session, script):
            return False
        payload = session.payloads.get(script.id)
        if payload is None:
            result, error = self._preprocess(script)
            if error is not None:
                logger.error(f"[INJECT] Wrapping '{script.name}' failed: {error}")
                return False
            payload = self._payload(session, script, result.processed_code)
        try:
            return self._insert(session, script, payload, force=force)
        except FrameDetachedError:
            self.detach(session.frame_id)
            return False

    # ---- script changes ------------------------------------------------------
    def _on_store_event(self, event, script):
        if event in (script_store.DISABLED, script_store.REMOVED):
            self.on_script_disabled(script.id)
        else:
            self.on_script_changed(script.id)

    def on_script_disabled(self, script_id: str):
        self.menu_registry.unregister_script(script_id)
        self.ledger.forget_script(script_id)
        for session in self.sessions.values():
            session.apis.pop(script_id, None)
            session.payloads.pop(script_id, None)

    def on_script_changed(self, script_id: str):
        clear_pattern_cache()
        for session in self.sessions.values():
            session.payloads.pop(script_id, None)

    # ---- introspection -------------------------------------------------------
    def status(self) -> List[Dict]:
        summary = []
        for session in self.sessions.values():
            summary.append({
                "frame_id": session.frame_id,
                "url": session.url,
                "state": session.state,
                "epoch": self.ledger.epoch(session.frame_id),
                "injected": sorted(self.ledger.injected_scripts(session.frame_id)),
                "abandoned": sorted(session.abandoned),
                "menu_commands": len(self.menu_registry.commands_for_frame(session.frame_id)),
                "polls": session.polls,
            })
        return summary
