import pytest

from framemonkey.constants import FRAME_ID_ATTR
from framemonkey.injection_coordinator import INJECTING, SETTLED, InjectionCoordinator, Scheduler
from framemonkey.injection_ledger import InjectionLedger, generate_frame_id
from framemonkey.retry_utils import poll_until_true

from conftest import FakeFrame, make_source


def run_for(coordinator, clock, seconds, step=0.05):
    elapsed = 0.0
    while elapsed < seconds:
        clock.advance(step)
        elapsed += step
        coordinator.tick()


@pytest.fixture
def coordinator(store, clock):
    coord = InjectionCoordinator(
        store, clock=clock, background=False, retry_delay=0,
        idle_delay=0, poll_interval=1.0, refresh_delay=0.3,
    )
    yield coord
    coord.shutdown()


# ---- Scheduler / ledger ------------------------------------------------------

def test_scheduler_fires_in_time_order_and_replaces_keyed_timers(clock):
    scheduler = Scheduler(clock)
    fired = []
    scheduler.call_later(0.2, lambda: fired.append("b"))
    scheduler.call_later(0.1, lambda: fired.append("a"))
    scheduler.call_later(0.1, lambda: fired.append("old"), key="k")
    scheduler.call_later(0.3, lambda: fired.append("new"), key="k")

    assert scheduler.run_due() == 0
    clock.advance(0.25)
    scheduler.run_due()
    assert fired == ["a", "b"]
    clock.advance(0.1)
    scheduler.run_due()
    assert fired == ["a", "b", "new"]


def test_scheduler_cancel_prefix(clock):
    scheduler = Scheduler(clock)
    fired = []
    scheduler.call_later(0, lambda: fired.append(1), key="f1:poll")
    scheduler.call_later(0, lambda: fired.append(2), key="f2:poll")
    scheduler.cancel_prefix("f1:")
    scheduler.run_due()
    assert fired == [2]


def test_ledger_epoch_forgets_injections():
    ledger = InjectionLedger()
    assert ledger.begin_epoch("t", "https://a/") == 1
    ledger.mark_injected("t", "s1")
    assert ledger.is_injected("t", "s1")
    assert ledger.begin_epoch("t", "https://b/") == 2
    assert not ledger.is_injected("t", "s1")
    assert ledger.url("t") == "https://b/"


def test_generated_frame_ids_are_unique():
    ids = {generate_frame_id() for _ in range(50)}
    assert len(ids) == 50
    assert all(i.startswith("framemonkey-frame-") for i in ids)


# ---- attach and inject -------------------------------------------------------

def test_attach_assigns_stable_id_and_injects_once(coordinator, store, frame):
    script = store.add_script(make_source("Hello"))
    session = coordinator.attach(frame)

    assert frame.attributes[FRAME_ID_ATTR] == session.frame_id
    assert coordinator.attach(frame) is session
    assert coordinator.is_attached(frame)

    coordinator.tick()
    assert len(frame.payloads()) == 1
    assert session.state == SETTLED
    assert coordinator.ledger.is_injected(session.frame_id, script.id)
    assert frame.has_marker("framemonkey-injected-" + script.id)


def test_existing_frame_id_attribute_is_reused(coordinator, frame):
    frame.attributes[FRAME_ID_ATTR] = "framemonkey-frame-existing"
    session = coordinator.attach(frame)
    assert session.frame_id == "framemonkey-frame-existing"


def test_inject_script_is_deduplicated_unless_forced(coordinator, store, frame):
    script = store.add_script(make_source("Once"))
    coordinator.attach(frame)
    coordinator.tick()

    assert coordinator.inject_script(frame, script) is False
    assert len(frame.payloads()) == 1
    assert coordinator.inject_script(frame, script, force=True) is True
    assert len(frame.payloads()) == 2


def test_marker_counts_as_injected_without_ledger_entry(coordinator, store, frame):
    script = store.add_script(make_source("Marked"))
    session = coordinator.attach(frame)
    frame.markers["framemonkey-injected-" + script.id] = {}
    coordinator.tick()

    assert frame.payloads() == []
    assert coordinator.ledger.is_injected(session.frame_id, script.id)


def test_non_matching_script_is_not_injected(coordinator, store, frame):
    store.add_script(make_source("Elsewhere", match="https://other.org/*"))
    session = coordinator.attach(frame)
    coordinator.tick()
    assert frame.payloads() == []
    assert session.state == SETTLED


def test_payload_carries_prelude_and_source(coordinator, store, frame):
    store.add_script(make_source("Body", body="window.bodyRan = true;"))
    coordinator.attach(frame)
    coordinator.tick()

    payload = frame.payloads()[0]
    assert payload.startswith("(function() {")
    assert "window.bodyRan = true;" in payload
    assert "GM_setValue" in payload
    assert frame.channel in payload


def test_run_at_stages_follow_document_readiness(store, clock):
    coordinator = InjectionCoordinator(store, clock=clock, background=False, retry_delay=0, idle_delay=0.1)
    store.add_script(make_source("Late", body="window.late = 1;"))
    store.add_script(make_source("Early", run_at="document-start", body="window.early = 1;"))
    frame = FakeFrame(ready_state="loading")
    try:
        coordinator.attach(frame)
        coordinator.tick()
        assert len(frame.payloads()) == 1
        assert "window.early" in frame.payloads()[0]

        frame.ready_state = "complete"
        coordinator.tick()
        assert len(frame.payloads()) == 1

        clock.advance(0.15)
        coordinator.tick()
        assert len(frame.payloads()) == 2
        assert "window.late" in frame.payloads()[1]
    finally:
        coordinator.shutdown()


def test_document_end_waits_for_interactive(coordinator, store):
    store.add_script(make_source("End", run_at="document-end"))
    frame = FakeFrame(ready_state="loading")
    session = coordinator.attach(frame)
    coordinator.tick()
    assert frame.payloads() == []
    assert session.state == INJECTING

    frame.ready_state = "interactive"
    coordinator.tick()
    assert len(frame.payloads()) == 1


def test_script_disabled_before_its_stage_is_not_injected(coordinator, store, clock):
    script = store.add_script(make_source("Idle later"))
    frame = FakeFrame(ready_state="loading")
    session = coordinator.attach(frame)
    coordinator.tick()
    assert frame.payloads() == []

    store.disable_script(script.id)
    frame.ready_state = "complete"
    run_for(coordinator, clock, 0.5)

    assert frame.payloads() == []
    assert session.state == SETTLED
    assert script.id not in coordinator.ledger.injected_scripts(session.frame_id)


# ---- retries -----------------------------------------------------------------

def test_insert_retries_until_success(coordinator, store, frame):
    script = store.add_script(make_source("Flaky"))
    frame.fail_payloads = 2
    session = coordinator.attach(frame)
    coordinator.tick()

    assert len(frame.payloads()) == 1
    assert frame.fail_payloads == 0
    assert script.id not in session.abandoned


def test_exhausted_retries_abandon_only_that_script(coordinator, store, frame):
    broken = store.add_script(make_source("Broken"))
    healthy = store.add_script(make_source("Healthy", body="window.healthy = 1;"))
    frame.fail_payloads = 4
    session = coordinator.attach(frame)
    coordinator.tick()

    # max_retries=3 means four attempts, all consumed by the first script
    assert frame.fail_payloads == 0
    assert session.abandoned == {broken.id}
    assert len(frame.payloads()) == 1
    assert "window.healthy" in frame.payloads()[0]
    assert coordinator.ledger.is_injected(session.frame_id, healthy.id)
    assert session.state == SETTLED


def test_cross_origin_frame_waits_for_load_and_abandons(coordinator, store, clock):
    script = store.add_script(make_source("Blocked"))
    frame = FakeFrame(accessible=False)
    session = coordinator.attach(frame)
    coordinator.tick()
    assert session.state == INJECTING

    frame.pending_loads = 1
    run_for(coordinator, clock, 0.5)

    assert frame.payloads() == []
    assert script.id in session.abandoned
    assert session.state == SETTLED


# ---- navigation and polling --------------------------------------------------

def test_navigation_reinjects_exactly_once(coordinator, store, frame, clock):
    store.add_script(make_source("Nav"))
    session = coordinator.attach(frame)
    coordinator.tick()
    first_epoch = coordinator.ledger.epoch(session.frame_id)

    frame.navigate("https://example.com/next")
    coordinator.tick()
    assert len(frame.payloads()) == 1

    run_for(coordinator, clock, 0.5)
    assert len(frame.payloads()) == 2
    assert coordinator.ledger.epoch(session.frame_id) == first_epoch + 1
    assert session.url == "https://example.com/next"

    run_for(coordinator, clock, 0.5)
    assert len(frame.payloads()) == 2


def test_navigation_drops_menu_commands_of_old_document(coordinator, store, frame, clock):
    script = store.add_script(make_source("Menus"))
    coordinator.attach(frame)
    coordinator.tick()
    frame.register_command(script.id, "Do it", lambda: None)
    coordinator.tick()
    assert len(coordinator.menu_registry.commands_for_script(script.id)) == 1

    frame.navigate("https://example.com/other")
    run_for(coordinator, clock, 0.5)
    assert coordinator.menu_registry.commands_for_script(script.id) == []


def test_title_change_triggers_same_document_refresh(coordinator, store, frame, clock):
    script = store.add_script(make_source("Watch"))
    session = coordinator.attach(frame)
    coordinator.tick()
    frame.register_command(script.id, "Keep me", lambda: None)

    # the first poll sees our own marker in the DOM hash
    run_for(coordinator, clock, 1.5)
    settled_epoch = coordinator.ledger.epoch(session.frame_id)
    run_for(coordinator, clock, 1.0)
    assert coordinator.ledger.epoch(session.frame_id) == settled_epoch

    frame.title = "Changed"
    run_for(coordinator, clock, 1.5)
    assert coordinator.ledger.epoch(session.frame_id) == settled_epoch + 1
    assert len(frame.payloads()) == 1
    assert len(coordinator.menu_registry.commands_for_script(script.id)) == 1


def test_force_check_reinjects_missing_marker(store, clock, frame):
    coordinator = InjectionCoordinator(
        store, clock=clock, background=False, retry_delay=0, idle_delay=0,
        poll_interval=1.0, refresh_delay=0.3, force_check_every=2,
    )
    store.add_script(make_source("Sticky"))
    try:
        coordinator.attach(frame)
        coordinator.tick()
        run_for(coordinator, clock, 1.5)
        assert len(frame.payloads()) == 1

        frame.markers.clear()
        run_for(coordinator, clock, 2.0)
        assert len(frame.payloads()) == 2
        assert frame.markers
    finally:
        coordinator.shutdown()


def test_removed_frame_is_detached(coordinator, store, frame, clock):
    script = store.add_script(make_source("Gone"))
    session = coordinator.attach(frame)
    coordinator.tick()
    frame.register_command(script.id, "Cmd", lambda: None)
    coordinator.tick()

    frame.attached = False
    run_for(coordinator, clock, 1.2)

    assert coordinator.session_for(session.frame_id) is None
    assert session.detached
    assert coordinator.menu_registry.all_commands() == []
    assert coordinator.ledger.epoch(session.frame_id) == 0


def test_reinject_forces_new_epoch(coordinator, store, frame):
    store.add_script(make_source("Again"))
    session = coordinator.attach(frame)
    coordinator.tick()

    assert coordinator.reinject(frame) is True
    coordinator.tick()
    assert len(frame.payloads()) == 2
    assert coordinator.ledger.epoch(session.frame_id) == 2
    assert coordinator.reinject("unknown-frame") is False


# ---- script store changes ----------------------------------------------------

def test_disabling_script_removes_its_menu_commands(coordinator, store, frame):
    script = store.add_script(make_source("Menu owner"))
    session = coordinator.attach(frame)
    coordinator.tick()
    frame.register_command(script.id, "First", lambda: None)
    frame.register_command(script.id, "Second", lambda: None)
    coordinator.tick()
    assert len(coordinator.menu_registry.commands_for_script(script.id)) == 2

    store.disable_script(script.id)

    assert coordinator.menu_registry.commands_for_script(script.id) == []
    assert not coordinator.ledger.is_injected(session.frame_id, script.id)
    assert script.id not in session.apis


def test_menu_command_executes_in_frame(coordinator, store, frame):
    script = store.add_script(make_source("Clicker"))
    calls = []
    coordinator.attach(frame)
    coordinator.tick()
    command_id = frame.register_command(script.id, "Click", lambda: calls.append(1))
    coordinator.tick()

    assert coordinator.menu_registry.execute(command_id) is True
    assert calls == [1]


def test_value_requests_are_answered_on_the_frame_channel(coordinator, store, frame):
    script = store.add_script(make_source("Values"))
    coordinator.attach(frame)
    coordinator.tick()

    frame.send({"type": "set-value", "scriptId": script.id, "name": "count", "value": 3})
    frame.send({"type": "get-value", "scriptId": script.id, "name": "count", "requestId": "r1"})

    def replied():
        coordinator.tick()
        return any(m.get("type") == "reply" for m in frame.posted)

    poll_until_true(replied, timeout=5.0, interval=0.01)
    replies = [m for m in frame.posted if m.get("type") == "reply"]
    assert replies[-1]["requestId"] == "r1"
    assert replies[-1]["value"] == {"found": True, "value": 3}
    assert replies[-1]["channel"] == frame.channel


def test_status_summarizes_sessions(coordinator, store, frame):
    script = store.add_script(make_source("Status"))
    coordinator.attach(frame)
    coordinator.tick()

    (entry,) = coordinator.status()
    assert entry["url"] == "https://example.com/page"
    assert entry["state"] == SETTLED
    assert entry["injected"] == [script.id]
    assert entry["epoch"] == 1
