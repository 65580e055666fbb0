"""Provider adapters for policy-tiered oracle execution.

This module uses an OpenAI-compatible Chat Completions API contract so a
single integration path can work across OpenRouter and other vendors. The
credential is always supplied by the caller and forwarded verbatim.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from urllib import error, request
import json
import os

from pydantic import BaseModel, ValidationError

from .policy import estimate_token_count


DEFAULT_OPENAI_COMPATIBLE_BASE_URL = "https://openrouter.ai/api/v1"
SUPPORTED_PROVIDERS = {"openai_compatible"}
DEFAULT_MODEL_BY_TIER: dict[str, str] = {
    "strong": "google/gemini-2.5-flash",
    "fast": "google/gemini-2.5-flash",
    "cheap": "google/gemini-2.5-flash",
}


def _first_non_empty(*values: str | None) -> str | None:
    for value in values:
        if value and value.strip():
            return value.strip()
    return None


def default_model_for_tier(tier: str) -> str:
    return DEFAULT_MODEL_BY_TIER.get(str(tier or "").strip().lower(), DEFAULT_MODEL_BY_TIER["fast"])


@dataclass(frozen=True)
class ProviderExecutionResult:
    output: dict[str, Any]
    model_name: str
    prompt_tokens: int | None = None
    completion_tokens: int | None = None


class ProviderError(RuntimeError):
    def __init__(self, message: str, *, error_code: str, model_name: str | None = None) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.model_name = model_name


class ProviderUnavailableError(ProviderError):
    pass


class ProviderExecutionError(ProviderError):
    pass


@dataclass(frozen=True)
class TierProviderConfig:
    tier: str
    provider: str
    model: str
    base_url: str

    def model_name(self) -> str:
        return f"{self.provider}:{self.model}"


def _tier_provider_config(tier: str) -> TierProviderConfig:
    tier_name = str(tier or "").strip().lower()
    if not tier_name:
        raise ProviderUnavailableError("Missing tier name", error_code="missing_tier")

    env_tier = tier_name.upper()
    provider = (
        _first_non_empty(
            os.environ.get(f"GRIDWORLD_LLM_{env_tier}_PROVIDER"),
            os.environ.get("GRIDWORLD_LLM_PROVIDER"),
        )
        or "openai_compatible"
    ).lower()
    if provider not in SUPPORTED_PROVIDERS:
        raise ProviderUnavailableError(
            f"Unsupported provider: {provider}",
            error_code="unsupported_provider",
        )

    model = _first_non_empty(
        os.environ.get(f"GRIDWORLD_LLM_{env_tier}_MODEL"),
        os.environ.get("GRIDWORLD_LLM_MODEL"),
    )
    if not model:
        if tier_name not in DEFAULT_MODEL_BY_TIER:
            raise ProviderUnavailableError(
                f"No model configured for tier: {tier_name}",
                error_code="missing_model",
            )
        model = DEFAULT_MODEL_BY_TIER[tier_name]

    base_url = _first_non_empty(
        os.environ.get(f"GRIDWORLD_LLM_{env_tier}_BASE_URL"),
        os.environ.get("GRIDWORLD_LLM_BASE_URL"),
    )
    if not base_url:
        base_url = DEFAULT_OPENAI_COMPATIBLE_BASE_URL

    return TierProviderConfig(
        tier=tier_name,
        provider=provider,
        model=model,
        base_url=base_url.rstrip("/"),
    )


def _build_messages(*, system_prompt: str | None, prompt_text: str) -> list[dict[str, str]]:
    messages: list[dict[str, str]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": prompt_text})
    return messages


def _parse_content_text(message: Any) -> str:
    if isinstance(message, str):
        return message
    if isinstance(message, list):
        chunks: list[str] = []
        for item in message:
            if isinstance(item, dict):
                text = item.get("text")
                if text:
                    chunks.append(str(text))
        return "".join(chunks)
    return str(message or "")


def _extract_json_object(text: str) -> dict[str, Any]:
    candidate = str(text or "").strip()
    if not candidate:
        raise ProviderExecutionError("Empty model response", error_code="empty_response")

    try:
        parsed = json.loads(candidate)
        if isinstance(parsed, dict):
            return parsed
    except ValueError:
        pass

    in_string = False
    escape = False
    depth = 0
    start = None
    for idx, char in enumerate(candidate):
        if in_string:
            if escape:
                escape = False
            elif char == "\\":
                escape = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
            continue
        if char == "{":
            if depth == 0:
                start = idx
            depth += 1
            continue
        if char == "}":
            if depth <= 0:
                continue
            depth -= 1
            if depth == 0 and start is not None:
                blob = candidate[start : idx + 1]
                try:
                    parsed = json.loads(blob)
                except ValueError:
                    continue
                if isinstance(parsed, dict):
                    return parsed
                break

    raise ProviderExecutionError(
        "Response does not contain a valid JSON object",
        error_code="invalid_json_output",
    )


def _validate_output_schema(
    task_name: str,
    output: dict[str, Any],
    schema: type[BaseModel] | None,
) -> dict[str, Any]:
    """Validate a parsed payload and return its normalized form."""
    if schema is None:
        return output
    try:
        model = schema.model_validate(output)
    except ValidationError as exc:
        raise ProviderExecutionError(
            f"Output for task '{task_name}' failed schema validation: {exc.error_count()} error(s)",
            error_code="invalid_schema_output",
        ) from exc
    return model.model_dump(by_alias=True)


def _post_openai_compatible(
    *,
    config: TierProviderConfig,
    api_key: str,
    system_prompt: str | None,
    prompt_text: str,
    output_format: str,
    temperature: float,
    max_output_tokens: int,
    timeout_ms: int,
) -> ProviderExecutionResult:
    payload: dict[str, Any] = {
        "model": config.model,
        "messages": _build_messages(system_prompt=system_prompt, prompt_text=prompt_text),
        "temperature": float(temperature),
        "max_tokens": int(max_output_tokens),
    }
    if output_format == "json":
        payload["response_format"] = {"type": "json_object"}
    body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    req = request.Request(
        f"{config.base_url}/chat/completions",
        method="POST",
        data=body,
        headers={"Content-Type": "application/json"},
    )
    req.add_header("Authorization", f"Bearer {api_key}")

    timeout_s = max(0.2, float(timeout_ms) / 1000.0)
    try:
        with request.urlopen(req, timeout=timeout_s) as response:
            raw = response.read().decode("utf-8", errors="replace")
    except error.HTTPError as exc:
        detail = ""
        try:
            detail = exc.read().decode("utf-8", errors="replace")
        except OSError:
            detail = ""
        raise ProviderExecutionError(
            f"Provider HTTP error {exc.code}: {detail[:240]}",
            error_code=f"http_{exc.code}",
            model_name=config.model_name(),
        ) from exc
    except (error.URLError, OSError) as exc:
        raise ProviderExecutionError(
            f"Provider network error: {exc}",
            error_code="network_error",
            model_name=config.model_name(),
        ) from exc

    try:
        parsed = json.loads(raw)
    except ValueError as exc:
        raise ProviderExecutionError(
            "Provider returned non-JSON response",
            error_code="invalid_provider_response",
            model_name=config.model_name(),
        ) from exc

    choices = parsed.get("choices") if isinstance(parsed, dict) else None
    if not choices:
        raise ProviderExecutionError(
            "Provider response missing choices",
            error_code="missing_choices",
            model_name=config.model_name(),
        )
    first = choices[0] or {}
    message = (first.get("message") or {}).get("content")
    content_text = _parse_content_text(message)
    if output_format == "json":
        output = _extract_json_object(content_text)
    else:
        text = content_text.strip()
        if not text:
            raise ProviderExecutionError(
                "Empty model response",
                error_code="empty_response",
                model_name=config.model_name(),
            )
        output = {"text": text}

    usage = parsed.get("usage") or {}
    prompt_tokens = usage.get("prompt_tokens")
    completion_tokens = usage.get("completion_tokens")
    try:
        prompt = int(prompt_tokens) if prompt_tokens is not None else estimate_token_count(prompt_text)
    except (TypeError, ValueError):
        prompt = estimate_token_count(prompt_text)
    try:
        completion = (
            int(completion_tokens)
            if completion_tokens is not None
            else estimate_token_count(content_text)
        )
    except (TypeError, ValueError):
        completion = estimate_token_count(content_text)

    return ProviderExecutionResult(
        output=output,
        model_name=str(parsed.get("model") or config.model_name()),
        prompt_tokens=prompt,
        completion_tokens=completion,
    )


def execute_tier_model(
    *,
    tier: str,
    task_name: str,
    api_key: str | None,
    system_prompt: str | None,
    prompt_text: str,
    output_format: str,
    temperature: float,
    max_output_tokens: int,
    timeout_ms: int,
) -> ProviderExecutionResult:
    """Execute one oracle task against the configured provider for one tier."""
    if not api_key or not api_key.strip():
        raise ProviderUnavailableError(
            f"No API key supplied for task: {task_name}",
            error_code="missing_api_key",
        )
    config = _tier_provider_config(tier)
    return _post_openai_compatible(
        config=config,
        api_key=api_key,
        system_prompt=system_prompt,
        prompt_text=prompt_text,
        output_format=output_format,
        temperature=temperature,
        max_output_tokens=max_output_tokens,
        timeout_ms=timeout_ms,
    )
