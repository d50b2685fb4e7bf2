"""Project configuration loaded from pyproject.toml."""

from __future__ import annotations

import tomllib
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import BaseModel


class SanitizerConfig(BaseModel):
    """Project-wide defaults for book-sanitizer."""

    # Chunking parameters (tiktoken-based)
    max_chunk_tokens: int = 500
    encoding: str = "cl100k_base"

    # Diagnostics
    log_dir: str = "logs"


@dataclass(frozen=True)
class RunSettings:
    """Immutable settings for a single sanitization run.

    Built once by the CLI (or a test) and handed to the Dispatcher, which
    never consults process-wide state on its own.

    Attributes:
        input_dir: Directory holding the .txt files to sanitize
        output_dir: Directory receiving one YAML file per document and configuration
        max_chunk_tokens: Token limit passed to the chunker
        encoding: tiktoken encoding used to size chunks
    """

    input_dir: Path
    output_dir: Path
    max_chunk_tokens: int = 500
    encoding: str = "cl100k_base"

    def __post_init__(self) -> None:
        if self.max_chunk_tokens <= 0:
            raise ValueError("max_chunk_tokens must be positive")


@lru_cache(maxsize=1)
def load_config() -> SanitizerConfig:
    """Load configuration from pyproject.toml.

    Returns:
        SanitizerConfig with settings from [tool.book-sanitizer] section,
        falling back to defaults if not found.
    """
    pyproject_path = _find_pyproject()
    if pyproject_path is None:
        return SanitizerConfig()

    with pyproject_path.open("rb") as f:
        data = tomllib.load(f)

    tool_config: dict[str, Any] = data.get("tool", {}).get("book-sanitizer", {})
    return SanitizerConfig(**tool_config)


def _find_pyproject() -> Path | None:
    """Find pyproject.toml by walking up from current file."""
    current = Path(__file__).resolve().parent
    for _ in range(10):  # Max 10 levels up
        candidate = current / "pyproject.toml"
        if candidate.exists():
            return candidate
        if current.parent == current:
            break
        current = current.parent
    return None
