"""
LLM Service for model completions with native tool calling.

Wraps litellm behind the LLMProviderProtocol: model aliases (``mother``,
``scenario``) resolve to provider model names from ``llm_config.yaml``,
per-model parameters are merged with call-site overrides, and transient
provider errors are retried with exponential backoff.
"""

import asyncio
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import litellm
import structlog
import yaml

_ALLOWED_PARAMS = (
    "temperature",
    "top_p",
    "max_tokens",
    "frequency_penalty",
    "presence_penalty",
    "response_format",
)


@dataclass
class RetryPolicy:
    """Retry policy configuration."""

    max_attempts: int = 3
    backoff_multiplier: float = 2.0
    timeout: int = 60
    retry_on_errors: list[str] = field(default_factory=list)


class LLMService:
    """
    litellm-backed completion service.

    Provider errors never raise out of ``complete``; they come back as
    ``{"success": False, "error": ..., "error_type": ...}`` so the calling
    agent can decide whether to retry, feed the error back, or give up.
    """

    def __init__(
        self,
        config_path: str = "configs/llm_config.yaml",
        model_overrides: dict[str, str] | None = None,
    ):
        """
        Initialize LLMService with configuration.

        Args:
            config_path: Path to YAML configuration file
            model_overrides: Alias -> model name, taking precedence over the file
                (used for per-profile ``llm.mother_model`` / ``llm.scenario_model``)

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config is invalid
        """
        self.logger = structlog.get_logger().bind(component="llm_service")
        self._load_config(config_path)
        for alias, model in (model_overrides or {}).items():
            if model:
                self.models[alias] = model
        self._check_provider_keys()

        self.logger.info(
            "llm_service_initialized",
            default_model=self.default_model,
            model_aliases=list(self.models.keys()),
        )

    def _load_config(self, config_path: str) -> None:
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"LLM config not found: {config_path}")

        with open(config_file, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f)

        if config is None:
            raise ValueError(f"Config file is empty or invalid: {config_path}")

        self.default_model = config.get("default_model", "scenario")
        self.models = dict(config.get("models", {}))
        self.model_params = config.get("model_params", {})
        self.default_params = config.get("default_params", {})

        if not self.models:
            raise ValueError("Config must define at least one model in 'models' section")

        retry_config = config.get("retry_policy", {})
        self.retry_policy = RetryPolicy(
            max_attempts=retry_config.get("max_attempts", 3),
            backoff_multiplier=retry_config.get("backoff_multiplier", 2.0),
            timeout=retry_config.get("timeout", 60),
            retry_on_errors=retry_config.get("retry_on_errors", []),
        )

        self.logging_config = config.get("logging", {})
        self.provider_config = config.get("providers", {})

    def _check_provider_keys(self) -> None:
        """Warn about providers whose API key variable is unset."""
        for provider, provider_config in self.provider_config.items():
            api_key_env = (provider_config or {}).get("api_key_env")
            if api_key_env and not os.getenv(api_key_env):
                self.logger.warning(
                    "provider_api_key_missing",
                    provider=provider,
                    env_var=api_key_env,
                    hint="Set environment variable for API access",
                )

    def _resolve_model(self, model_alias: str | None) -> str:
        if model_alias is None:
            model_alias = self.default_model
        resolved = self.models.get(model_alias, model_alias)
        self.logger.debug("model_resolved", model_alias=model_alias, resolved_model=resolved)
        return resolved

    def _get_model_parameters(self, model: str) -> dict[str, Any]:
        if model in self.model_params:
            return self.model_params[model].copy()
        # family match, e.g. "gpt-4.1" matches "gpt-4.1-mini"
        for model_key, params in self.model_params.items():
            if model.startswith(model_key):
                return params.copy()
        return self.default_params.copy()

    async def complete(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        tools: list[dict[str, Any]] | None = None,
        tool_choice: str | None = None,
        **kwargs,
    ) -> dict[str, Any]:
        """
        Perform an LLM completion with retry logic.

        Args:
            messages: Chat messages
            model: Model alias or None (uses default)
            tools: Tool definitions in OpenAI function calling format
            tool_choice: "auto", "none" or "required"
            **kwargs: Additional parameters (temperature, max_tokens, ...)

        Returns:
            Dict with:
            - success: bool
            - content: str | None
            - tool_calls: list of {"id", "type", "function": {"name", "arguments"}} or None
            - usage: Dict with token counts
            - error / error_type (if failed)
        """
        actual_model = self._resolve_model(model)
        merged = {**self._get_model_parameters(actual_model), **kwargs}
        final_params = {k: v for k, v in merged.items() if k in _ALLOWED_PARAMS}
        if tools:
            final_params["tools"] = tools
            final_params["tool_choice"] = tool_choice or "auto"

        for attempt in range(self.retry_policy.max_attempts):
            try:
                start_time = time.time()
                self.logger.info(
                    "llm_completion_started",
                    model=actual_model,
                    attempt=attempt + 1,
                    message_count=len(messages),
                    tool_count=len(tools or []),
                )

                response = await litellm.acompletion(
                    model=actual_model,
                    messages=messages,
                    timeout=self.retry_policy.timeout,
                    **final_params,
                )

                message = response.choices[0].message
                usage = getattr(response, "usage", {})
                if isinstance(usage, dict):
                    token_stats = usage
                else:
                    token_stats = {
                        "total_tokens": getattr(usage, "total_tokens", 0),
                        "prompt_tokens": getattr(usage, "prompt_tokens", 0),
                        "completion_tokens": getattr(usage, "completion_tokens", 0),
                    }

                latency_ms = int((time.time() - start_time) * 1000)
                tool_calls = self._extract_tool_calls(message)

                if self.logging_config.get("log_token_usage", True):
                    self.logger.info(
                        "llm_completion_success",
                        model=actual_model,
                        tokens=token_stats.get("total_tokens", 0),
                        tool_calls=len(tool_calls or []),
                        latency_ms=latency_ms,
                    )

                return {
                    "success": True,
                    "content": getattr(message, "content", None),
                    "tool_calls": tool_calls,
                    "usage": token_stats,
                    "model": actual_model,
                    "latency_ms": latency_ms,
                }

            except Exception as e:
                error_type = type(e).__name__
                error_msg = str(e)

                should_retry = attempt < self.retry_policy.max_attempts - 1 and any(
                    err_type in error_type or err_type in error_msg
                    for err_type in self.retry_policy.retry_on_errors
                )

                if should_retry:
                    backoff_time = self.retry_policy.backoff_multiplier**attempt
                    self.logger.warning(
                        "llm_completion_retry",
                        model=actual_model,
                        error_type=error_type,
                        attempt=attempt + 1,
                        backoff_seconds=backoff_time,
                    )
                    await asyncio.sleep(backoff_time)
                else:
                    self.logger.error(
                        "llm_completion_failed",
                        model=actual_model,
                        error_type=error_type,
                        error=error_msg[:200],
                        attempts=attempt + 1,
                    )
                    return {
                        "success": False,
                        "error": error_msg,
                        "error_type": error_type,
                        "model": actual_model,
                    }

        return {
            "success": False,
            "error": "Max retries exceeded",
            "model": actual_model,
        }

    @staticmethod
    def _extract_tool_calls(message: Any) -> list[dict[str, Any]] | None:
        raw_calls = getattr(message, "tool_calls", None)
        if not raw_calls:
            return None
        calls = []
        for raw in raw_calls:
            function = raw.function if not isinstance(raw, dict) else raw["function"]
            name = function.name if not isinstance(function, dict) else function["name"]
            arguments = function.arguments if not isinstance(function, dict) else function["arguments"]
            calls.append({
                "id": raw.id if not isinstance(raw, dict) else raw["id"],
                "type": "function",
                "function": {"name": name, "arguments": arguments or "{}"},
            })
        return calls
