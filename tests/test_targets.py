"""Tests for candidate server resolution and capability ordering."""

import pytest

from llmws.core.targets import (
    DEFAULT_ENDPOINT,
    dedupe_capability_tags,
    parse_env_targets,
    parse_server_entry,
    resolve_targets,
    sort_targets_by_capabilities,
    to_ws_url,
)
from llmws.core.types import Target


class TestToWsUrl:
    """Endpoint string normalization."""

    @pytest.mark.parametrize("raw", ["ws:\\\\host:8765", "ws:/host:8765", "ws://host:8765"])
    def test_typo_forms_normalize(self, raw):
        assert to_ws_url(raw) == "ws://host:8765"

    def test_bare_host_gets_default_scheme(self):
        assert to_ws_url("host:8765") == "ws://host:8765"
        assert to_ws_url("//host:8765") == "ws://host:8765"

    def test_other_schemes_kept(self):
        assert to_ws_url("wss://secure.example:443/path") == "wss://secure.example:443/path"

    def test_blank_is_dropped(self):
        assert to_ws_url("   ") == ""


class TestCapabilityTags:
    def test_lowercased_and_whitespace_collapsed(self):
        assert dedupe_capability_tags(["Vision", " long  context ", "vision"]) == (
            "vision", "long-context")

    def test_server_entry_object(self):
        target = parse_server_entry({"url": "gpu:9000", "capabilities": ["Vision", "vision"]})
        assert target == Target(url="ws://gpu:9000", capabilities=("vision",))

    def test_server_entry_without_url(self):
        assert parse_server_entry({"capabilities": ["vision"]}) is None
        assert parse_server_entry(42) is None


class TestSortByCapabilities:
    def test_full_match_first_then_partial_then_rest(self):
        a = Target("ws://a", ())
        b = Target("ws://b", ("vision",))
        c = Target("ws://c", ("vision", "tools"))
        ordered = sort_targets_by_capabilities([a, b, c], ["vision", "tools"])
        assert [t.url for t in ordered] == ["ws://c", "ws://b", "ws://a"]

    def test_equal_scores_keep_original_order(self):
        targets = [Target(f"ws://{n}", ("vision",)) for n in "xyz"]
        ordered = sort_targets_by_capabilities(targets, ["vision"])
        assert [t.url for t in ordered] == ["ws://x", "ws://y", "ws://z"]

    def test_no_preference_is_identity(self):
        targets = [Target("ws://b"), Target("ws://a")]
        assert sort_targets_by_capabilities(targets, []) == targets


class TestResolveTargets:
    """Priority, de-duplication and the built-in fallback."""

    def test_priority_order(self):
        model_params = {"servers": ["m1:1", "m2:2"], "server": "m3:3"}
        defaults = {"servers": ["d1:1"], "server": "d2:2"}
        env = {"LLMWS_SERVERS": "e1:1, e2:2", "LLMWS_SERVER": "e3:3"}
        urls = [t.url for t in resolve_targets(model_params, defaults, env)]
        assert urls == [
            "ws://m1:1", "ws://m2:2", "ws://m3:3",
            "ws://d1:1", "ws://d2:2",
            "ws://e1:1", "ws://e2:2", "ws://e3:3",
            DEFAULT_ENDPOINT,
        ]

    def test_duplicates_collapse_to_first_occurrence(self):
        model_params = {"servers": ["ws:/dup:1"]}
        defaults = {"server": "dup:1"}
        urls = [t.url for t in resolve_targets(model_params, defaults, {})]
        assert urls == ["ws://dup:1", DEFAULT_ENDPOINT]

    def test_empty_config_yields_default_only(self):
        assert resolve_targets({}, {}, {}) == [Target(url=DEFAULT_ENDPOINT)]

    def test_malformed_entries_are_dropped(self):
        model_params = {"servers": ["", None, {"capabilities": ["x"]}, "ok:1"]}
        urls = [t.url for t in resolve_targets(model_params, {}, {})]
        assert urls == ["ws://ok:1", DEFAULT_ENDPOINT]

    def test_preferred_capabilities_reorder(self):
        model_params = {
            "servers": ["plain:1", {"url": "eyes:2", "capabilities": ["vision"]}],
            "serverCapabilities": ["vision"],
        }
        urls = [t.url for t in resolve_targets(model_params, {}, {})]
        assert urls[0] == "ws://eyes:2"

    def test_env_parsing(self):
        targets = parse_env_targets({"LLMWS_SERVERS": "a:1,,b:2", "LLMWS_SERVER": " "})
        assert [t.url for t in targets] == ["a:1", "b:2"]
