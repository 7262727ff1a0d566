"""Tests for layered per-call settings resolution."""

from llmws.infra.runtime_config import (
    DEFAULT_SYSTEM_PROMPT,
    parse_env_positive_int,
    resolve_generation_config,
    resolve_runtime_settings,
)


def _config(defaults=None, params=None):
    cfg = {"llmws": defaults or {}}
    if params is not None:
        cfg["models"] = {"llmws/qwen": {"params": params}}
    return cfg


class TestTimeouts:
    def test_defaults_follow_call_timeout(self):
        settings = resolve_runtime_settings({}, provider="llmws", model="qwen",
                                            timeout=30.0, env={})
        assert settings.connect_timeout == 8.0
        assert settings.read_timeout == 30.0

    def test_short_call_timeout_caps_connect(self):
        settings = resolve_runtime_settings({}, provider="llmws", model="qwen",
                                            timeout=2.0, env={})
        assert settings.connect_timeout == 2.0

    def test_ms_keys_in_both_spellings(self):
        cfg = _config(defaults={"connect_timeout_ms": 1500}, params={"readTimeoutMs": 2500})
        settings = resolve_runtime_settings(cfg, provider="llmws", model="qwen",
                                            timeout=60.0, env={})
        assert settings.connect_timeout == 1.5
        assert settings.read_timeout == 2.5


class TestLayering:
    def test_model_params_override_defaults(self):
        cfg = _config(defaults={"historyTurns": 3, "includeHistory": True},
                      params={"historyTurns": 7, "includeHistory": False})
        settings = resolve_runtime_settings(cfg, provider="llmws", model="qwen",
                                            timeout=10.0, env={})
        assert settings.history_turns == 7
        assert settings.include_history is False

    def test_builtin_defaults(self):
        settings = resolve_runtime_settings(None, provider="llmws", model="qwen",
                                            timeout=10.0, env={})
        assert settings.include_history is True
        assert settings.history_turns == 12
        assert settings.history_chars == 12_000
        assert settings.budget_correction is True
        assert settings.system_prompt == DEFAULT_SYSTEM_PROMPT
        assert settings.silent_reply_token == "NO_REPLY"

    def test_other_models_params_are_ignored(self):
        cfg = {"models": {"llmws/other": {"params": {"historyTurns": 1}}}}
        settings = resolve_runtime_settings(cfg, provider="llmws", model="qwen",
                                            timeout=10.0, env={})
        assert settings.history_turns == 12

    def test_env_supplies_targets(self):
        settings = resolve_runtime_settings({}, provider="llmws", model="qwen", timeout=10.0,
                                            env={"LLMWS_SERVER": "envhost:1"})
        assert settings.targets[0].url == "ws://envhost:1"

    def test_budget_correction_can_be_disabled(self):
        cfg = _config(defaults={"budgetCorrection": False})
        settings = resolve_runtime_settings(cfg, provider="llmws", model="qwen",
                                            timeout=10.0, env={})
        assert settings.budget_correction is False


class TestGenerationConfig:
    def test_raw_name_beats_camel_case_across_layers(self):
        gen = resolve_generation_config(
            defaults={"max_new_tokens": 100},
            model_params={"config": {"maxNewTokens": 50}},
        )
        assert gen.max_new_tokens == 100

    def test_model_config_block_wins(self):
        gen = resolve_generation_config(
            defaults={"config": {"temperature": 0.2, "topK": 40}},
            model_params={"config": {"temperature": 0.9}},
        )
        assert gen.temperature == 0.9
        assert gen.top_k == 40

    def test_stream_params_override(self):
        gen = resolve_generation_config(
            defaults={"config": {"maxNewTokens": 512, "temperature": 0.2}},
            model_params={},
            stream_params={"temperature": 0.5, "maxTokens": 64},
        )
        assert gen.temperature == 0.5
        assert gen.max_new_tokens == 64

    def test_payload_omits_unset_knobs(self):
        gen = resolve_generation_config({"config": {"doSample": False}}, {})
        assert gen.to_payload() == {"do_sample": False}

    def test_booleans_are_not_numbers(self):
        gen = resolve_generation_config({"temperature": True}, {})
        assert gen.temperature is None


class TestEnvPositiveInt:
    def test_first_valid_name_wins(self):
        env = {"A": "zero", "B": "0", "C": "7.9"}
        assert parse_env_positive_int(env, ["A", "B", "C"], 4) == 7

    def test_fallback(self):
        assert parse_env_positive_int({}, ["A"], 4) == 4
