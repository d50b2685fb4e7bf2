"""Backend configuration files.

Each configuration file describes one rewriting backend: where it lives, how
to authenticate, which prompt template to send, how many requests may be in
flight at once, and how failed calls are retried. Files are YAML and are
validated into frozen pydantic models, so a configuration cannot change once
the run has started.

Example:
    name: local-llama
    backend: openai
    api_base: http://localhost:5001/v1
    model: qwen2.5-7b-instruct
    concurrency: 4
    retry:
      max_attempts: 6
      base_delay: 0.5
    template_path: templates/book_txt_sanitizer.yaml
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
    model_validator,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger("book_sanitizer.configuration")

TEXT_PLACEHOLDER = "{text}"

DEFAULT_SYSTEM_PROMPT = (
    "You are a meticulous copy editor restoring excerpts of scanned books. "
    "The excerpt was produced by OCR and may contain corrupted characters, "
    "broken hyphenation, misspelled words and stray page furniture such as "
    "running headers or page numbers. Correct these defects without changing "
    "the author's wording, meaning or paragraphing. Respond only with a JSON "
    'object of the form {"sanitizedBookExcerpt": "<cleaned text>"}.'
)


class ConfigurationError(Exception):
    """Raised when a configuration file is missing, malformed, or invalid."""

    pass


class RetryPolicy(BaseModel):
    """Retry behaviour for failed backend calls.

    Attributes:
        max_attempts: Total backend calls allowed per chunk (first call included)
        base_delay: Delay in seconds before the first retry
        multiplier: Growth factor applied to the delay after each failure
        max_delay: Upper bound in seconds for any single delay
        jitter_fraction: Random extra delay, as a fraction of the computed delay
        max_rejected_attempts: Attempts allowed to end in a rejection before
            the chunk fails permanently
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_attempts: int = Field(default=6, ge=1)
    base_delay: float = Field(default=0.5, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=30.0, ge=0)
    jitter_fraction: float = Field(default=0.1, ge=0)
    max_rejected_attempts: int = Field(default=2, ge=1)

    @model_validator(mode="after")
    def _check_delay_bounds(self) -> RetryPolicy:
        if self.base_delay > self.max_delay:
            raise ValueError("base_delay must not exceed max_delay")
        return self


class PromptTemplate(BaseModel):
    """Request template sent with every chunk.

    Attributes:
        system_prompt: Instructions sent as the system message
        user_prompt: User message; {text} is replaced by the chunk text
        response_key: JSON key holding the rewritten text in the model's
            reply, or None to use the raw reply
        temperature: Sampling temperature
        max_tokens: Cap on generated tokens (None leaves it to the server)
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    user_prompt: str = TEXT_PLACEHOLDER
    response_key: str | None = "sanitizedBookExcerpt"
    temperature: float = Field(default=0.2, ge=0)
    max_tokens: int | None = Field(default=None, gt=0)

    @field_validator("user_prompt")
    @classmethod
    def _require_placeholder(cls, value: str) -> str:
        if TEXT_PLACEHOLDER not in value:
            raise ValueError(f"user_prompt must contain the {TEXT_PLACEHOLDER} placeholder")
        return value

    def render(self, text: str) -> str:
        """Substitute chunk text into the user prompt."""
        return self.user_prompt.replace(TEXT_PLACEHOLDER, text)


class BackendConfiguration(BaseModel):
    """One rewriting backend plus its concurrency and retry policy.

    Attributes:
        name: Identifier, used in logs and as the output subdirectory
        backend: Request dialect ("openai" chat completions or "ollama" chat)
        api_base: Base URL of the endpoint
        model: Model name sent with each request
        api_key: Literal credential (optional)
        api_key_env: Environment variable holding the credential (optional)
        concurrency: Maximum simultaneous in-flight calls
        timeout_seconds: Bound on each individual call
        max_input_tokens: Largest chunk the endpoint accepts (None: the run's chunk limit)
        retry: Retry policy
        template: Prompt template
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(pattern=r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
    backend: Literal["openai", "ollama"] = "openai"
    api_base: str = Field(min_length=1)
    model: str = Field(min_length=1)
    api_key: SecretStr | None = None
    api_key_env: str | None = None
    concurrency: int = Field(default=4, ge=1)
    timeout_seconds: float = Field(default=120.0, gt=0)
    max_input_tokens: int | None = Field(default=None, gt=0)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    template: PromptTemplate = Field(default_factory=PromptTemplate)

    @field_validator("api_base")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    def resolve_api_key(self) -> str | None:
        """Return the credential for this backend, if any.

        Raises:
            ConfigurationError: If api_key_env names an unset variable
        """
        if self.api_key is not None:
            return self.api_key.get_secret_value()
        if self.api_key_env:
            value = os.getenv(self.api_key_env)
            if not value:
                raise ConfigurationError(
                    f"{self.name}: environment variable {self.api_key_env} is not set"
                )
            return value
        return None


def _read_yaml_mapping(path: Path) -> dict[str, Any]:
    """Read a YAML file that must contain a mapping at top level."""
    try:
        with path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"Configuration file not found: {path}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"{path}: invalid YAML: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path}: expected a mapping at top level")
    return data


def load_configuration(path: Path) -> BackendConfiguration:
    """Load and validate one backend configuration file.

    The configuration name defaults to the file stem. A template may be given
    inline (template:) or as a separate YAML file (template_path:) resolved
    relative to the configuration file.

    Args:
        path: Path to the YAML configuration file

    Returns:
        Validated, immutable BackendConfiguration

    Raises:
        ConfigurationError: If the file cannot be read or fails validation
    """
    data = _read_yaml_mapping(path)
    data.setdefault("name", path.stem)

    template_path = data.pop("template_path", None)
    if template_path is not None:
        if "template" in data:
            raise ConfigurationError(f"{path}: set either template or template_path, not both")
        data["template"] = _read_yaml_mapping(path.parent / str(template_path))

    try:
        configuration = BackendConfiguration.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"{path}: {e}") from e

    logger.debug(
        "Loaded configuration %s (%s %s, concurrency=%d)",
        configuration.name,
        configuration.backend,
        configuration.api_base,
        configuration.concurrency,
    )
    return configuration


def load_configurations(paths: Iterable[Path]) -> list[BackendConfiguration]:
    """Load several configuration files, rejecting duplicate names.

    Args:
        paths: Configuration file paths, in command-line order

    Returns:
        Configurations in the same order

    Raises:
        ConfigurationError: If any file is invalid or two share a name
    """
    configurations: list[BackendConfiguration] = []
    seen: dict[str, Path] = {}
    for path in paths:
        configuration = load_configuration(path)
        if configuration.name in seen:
            raise ConfigurationError(
                f"Duplicate configuration name '{configuration.name}' "
                f"in {seen[configuration.name]} and {path}"
            )
        seen[configuration.name] = path
        configurations.append(configuration)
    return configurations
