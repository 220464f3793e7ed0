from framemonkey.capability_api import build_info
from framemonkey.gm_prelude import marker_id, render_bridge, render_prelude, wrap_script
from framemonkey.userscript import parse_script

from conftest import make_source


def _prelude(values=None, resources=None, name="Prelude"):
    script = parse_script(make_source(name))
    return script, render_prelude(
        "frame-9", "chan-9", script.id, script.name, build_info(script),
        values or {}, resources or {},
    )


def test_every_placeholder_is_filled():
    _, prelude = _prelude()
    assert "__FM_" not in prelude
    assert "__framemonkeyOutbox" in prelude
    assert "_gmResourceCache" in prelude


def test_values_and_resources_are_embedded_as_json():
    script, prelude = _prelude(values={"count": 2}, resources={"css": {"text": "a{}", "url": "data:x"}})
    assert '{"count": 2}' in prelude
    assert '"css": {"text": "a{}", "url": "data:x"}' in prelude
    assert f'"{script.id}"' in prelude


def test_closing_script_tags_are_escaped():
    _, prelude = _prelude(values={"html": "</script><b>"}, name="Escapes")
    assert "</script>" not in prelude
    assert "<\\/script>" in prelude


def test_bridge_alone_carries_frame_identity():
    bridge = render_bridge("frame-1", "secret-channel")
    assert '"frame-1"' in bridge
    assert '"secret-channel"' in bridge


def test_wrap_script_nests_code_after_prelude():
    wrapped = wrap_script("var GM_x = 1;", "GM_x++;")
    assert wrapped.startswith("(function() {\n")
    assert wrapped.endswith("\n})();")
    assert wrapped.index("var GM_x = 1;") < wrapped.index("GM_x++;")


def test_marker_id():
    assert marker_id("abc_1") == "framemonkey-injected-abc_1"


def test_placeholder_names_inside_values_stay_literal():
    script, prelude = _prelude(values={"note": "see __FM_INFO__ and __FM_VALUES__"}, name="__FM_SCRIPT_ID__")
    assert '{"note": "see __FM_INFO__ and __FM_VALUES__"}' in prelude
    assert '"__FM_SCRIPT_ID__"' in prelude
    assert prelude.count(f'"{script.id}"') == 1
