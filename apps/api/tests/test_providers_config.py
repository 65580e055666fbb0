#!/usr/bin/env python3

from __future__ import annotations

import io
import json
import os
import unittest
from unittest import mock

from packages.gridworld_core.llm.providers import (
    DEFAULT_MODEL_BY_TIER,
    DEFAULT_OPENAI_COMPATIBLE_BASE_URL,
    ProviderExecutionError,
    ProviderUnavailableError,
    _extract_json_object,
    _tier_provider_config,
    _validate_output_schema,
    execute_tier_model,
)
from packages.gridworld_core.world.models import ProposalResult, TextOutput


class _FakeResponse(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def _chat_completion(content: str) -> _FakeResponse:
    body = {
        "model": "google/gemini-2.5-flash",
        "choices": [{"message": {"role": "assistant", "content": content}}],
        "usage": {"prompt_tokens": 21, "completion_tokens": 9},
    }
    return _FakeResponse(json.dumps(body).encode("utf-8"))


class ProviderConfigTests(unittest.TestCase):
    _env_keys = (
        "GRIDWORLD_LLM_MODEL",
        "GRIDWORLD_LLM_STRONG_MODEL",
        "GRIDWORLD_LLM_FAST_MODEL",
        "GRIDWORLD_LLM_CHEAP_MODEL",
        "GRIDWORLD_LLM_PROVIDER",
        "GRIDWORLD_LLM_STRONG_PROVIDER",
        "GRIDWORLD_LLM_FAST_PROVIDER",
        "GRIDWORLD_LLM_CHEAP_PROVIDER",
        "GRIDWORLD_LLM_BASE_URL",
        "GRIDWORLD_LLM_STRONG_BASE_URL",
        "GRIDWORLD_LLM_FAST_BASE_URL",
        "GRIDWORLD_LLM_CHEAP_BASE_URL",
    )

    def setUp(self) -> None:
        self._env_backup = {k: os.environ.get(k) for k in self._env_keys}
        for key in self._env_keys:
            os.environ.pop(key, None)

    def tearDown(self) -> None:
        for key, value in self._env_backup.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    def test_default_models_follow_tier_mapping(self) -> None:
        strong = _tier_provider_config("strong")
        fast = _tier_provider_config("fast")
        cheap = _tier_provider_config("cheap")

        self.assertEqual(strong.model, DEFAULT_MODEL_BY_TIER["strong"])
        self.assertEqual(fast.model, DEFAULT_MODEL_BY_TIER["fast"])
        self.assertEqual(cheap.model, DEFAULT_MODEL_BY_TIER["cheap"])
        self.assertEqual(strong.base_url, DEFAULT_OPENAI_COMPATIBLE_BASE_URL)
        self.assertEqual(strong.provider, "openai_compatible")

    def test_tier_specific_model_override_precedence(self) -> None:
        os.environ["GRIDWORLD_LLM_MODEL"] = "global-model"
        os.environ["GRIDWORLD_LLM_FAST_MODEL"] = "fast-tier-model"
        os.environ["GRIDWORLD_LLM_CHEAP_BASE_URL"] = "http://localhost:9999/v1"

        fast = _tier_provider_config("fast")
        cheap = _tier_provider_config("cheap")

        self.assertEqual(fast.model, "fast-tier-model")
        self.assertEqual(cheap.model, "global-model")
        self.assertEqual(cheap.base_url, "http://localhost:9999/v1")
        self.assertEqual(fast.base_url, DEFAULT_OPENAI_COMPATIBLE_BASE_URL)

    def test_unsupported_provider_is_unavailable(self) -> None:
        os.environ["GRIDWORLD_LLM_STRONG_PROVIDER"] = "carrier_pigeon"
        with self.assertRaises(ProviderUnavailableError) as raised:
            _tier_provider_config("strong")
        self.assertEqual(raised.exception.error_code, "unsupported_provider")

    def test_blank_api_key_is_rejected_before_any_request(self) -> None:
        with mock.patch("packages.gridworld_core.llm.providers.request.urlopen") as urlopen:
            with self.assertRaises(ProviderUnavailableError) as raised:
                execute_tier_model(
                    tier="fast",
                    task_name="summarize_turn",
                    api_key="   ",
                    system_prompt=None,
                    prompt_text="hello",
                    output_format="text",
                    temperature=0.7,
                    max_output_tokens=100,
                    timeout_ms=1000,
                )
        self.assertEqual(raised.exception.error_code, "missing_api_key")
        urlopen.assert_not_called()

    def test_json_mode_sends_bearer_key_and_response_format(self) -> None:
        content = 'Sure! {"changes": [{"row": 0, "col": 1, "newContent": ""}], "explanation": "moved"}'
        with mock.patch(
            "packages.gridworld_core.llm.providers.request.urlopen",
            return_value=_chat_completion(content),
        ) as urlopen:
            result = execute_tier_model(
                tier="fast",
                task_name="action_to_changes",
                api_key="sk-test",
                system_prompt="Respond with JSON.",
                prompt_text="move the knight",
                output_format="json",
                temperature=0.7,
                max_output_tokens=100,
                timeout_ms=1000,
            )

        sent = urlopen.call_args[0][0]
        payload = json.loads(sent.data.decode("utf-8"))
        self.assertEqual(sent.full_url, f"{DEFAULT_OPENAI_COMPATIBLE_BASE_URL}/chat/completions")
        self.assertEqual(sent.get_header("Authorization"), "Bearer sk-test")
        self.assertEqual(payload["response_format"], {"type": "json_object"})
        self.assertEqual(payload["messages"][0]["role"], "system")
        self.assertEqual(result.output["explanation"], "moved")
        self.assertEqual(result.prompt_tokens, 21)
        self.assertEqual(result.completion_tokens, 9)

    def test_text_mode_wraps_content(self) -> None:
        with mock.patch(
            "packages.gridworld_core.llm.providers.request.urlopen",
            return_value=_chat_completion("  The knight walks south.  "),
        ) as urlopen:
            result = execute_tier_model(
                tier="cheap",
                task_name="summarize_turn",
                api_key="sk-test",
                system_prompt=None,
                prompt_text="summarize",
                output_format="text",
                temperature=0.7,
                max_output_tokens=100,
                timeout_ms=1000,
            )

        payload = json.loads(urlopen.call_args[0][0].data.decode("utf-8"))
        self.assertNotIn("response_format", payload)
        self.assertEqual(result.output, {"text": "The knight walks south."})

    def test_extract_json_object_skips_surrounding_prose(self) -> None:
        parsed = _extract_json_object('```json\n{"text": "a {brace} inside"}\n```')
        self.assertEqual(parsed, {"text": "a {brace} inside"})

        with self.assertRaises(ProviderExecutionError) as raised:
            _extract_json_object("no json here")
        self.assertEqual(raised.exception.error_code, "invalid_json_output")

    def test_schema_validation_normalizes_proposal(self) -> None:
        output = _validate_output_schema(
            "action_to_changes",
            {"changes": [{"row": 2, "col": 3, "newContent": None}], "explanation": None},
            ProposalResult,
        )
        self.assertEqual(output, {"changes": [{"row": 2, "col": 3, "newContent": ""}], "explanation": ""})

    def test_schema_validation_rejects_malformed_proposal(self) -> None:
        with self.assertRaises(ProviderExecutionError) as raised:
            _validate_output_schema(
                "action_to_changes",
                {"changes": [{"row": "north", "col": 0, "newContent": "x"}], "explanation": "bad"},
                ProposalResult,
            )
        self.assertEqual(raised.exception.error_code, "invalid_schema_output")

    def test_schema_validation_rejects_empty_text(self) -> None:
        with self.assertRaises(ProviderExecutionError) as raised:
            _validate_output_schema("summarize_turn", {"text": ""}, TextOutput)
        self.assertEqual(raised.exception.error_code, "invalid_schema_output")


if __name__ == "__main__":
    unittest.main()
