"""YAML output for assembled document results.

One file per document and configuration, at
{output_dir}/{configuration_id}/{document_id}.yaml:

    document_id: book
    configuration_id: local-llama
    chunk_count: 2
    failed_count: 1
    entries:
    - chunk_index: 0
      status: sanitized
      text: |-
        Cleaned text line 1
        Cleaned text line 2
    - chunk_index: 1
      status: failed
      reason: 'transient: Server returned 503'
      attempts: 6

Multi-line text is written in literal block style so the cleaned excerpts
stay readable. The same results always serialize to the same bytes.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from book_sanitizer.sanitize.models import DocumentResult, Failed, Sanitized

logger = logging.getLogger("book_sanitizer.output")

STATUS_SANITIZED = "sanitized"
STATUS_FAILED = "failed"


class _LiteralDumper(yaml.SafeDumper):
    pass


def _represent_str(dumper: yaml.SafeDumper, data: str) -> yaml.ScalarNode:
    if "\n" in data:
        return dumper.represent_scalar("tag:yaml.org,2002:str", data, style="|")
    return dumper.represent_scalar("tag:yaml.org,2002:str", data)


_LiteralDumper.add_representer(str, _represent_str)


def document_result_to_dict(result: DocumentResult) -> dict[str, Any]:
    """Convert a DocumentResult to the output mapping, entries in chunk order."""
    entries: list[dict[str, Any]] = []
    for chunk_result in result.results:
        outcome = chunk_result.outcome
        entry: dict[str, Any] = {"chunk_index": chunk_result.chunk_index}
        if isinstance(outcome, Sanitized):
            entry["status"] = STATUS_SANITIZED
            entry["text"] = outcome.text
        elif isinstance(outcome, Failed):
            entry["status"] = STATUS_FAILED
            entry["reason"] = outcome.describe()
            entry["attempts"] = outcome.attempts_used
        entries.append(entry)

    return {
        "document_id": result.document_id,
        "configuration_id": result.configuration_id,
        "chunk_count": result.chunk_count,
        "failed_count": result.failed_count,
        "entries": entries,
    }


def render_document_result(result: DocumentResult) -> str:
    """Serialize a DocumentResult to YAML text."""
    return yaml.dump(
        document_result_to_dict(result),
        Dumper=_LiteralDumper,
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
    )


class YamlDocumentWriter:
    """Document sink writing one YAML file per (document, configuration).

    Args:
        output_dir: Root output directory; one subdirectory per configuration
    """

    def __init__(self, output_dir: Path) -> None:
        self._output_dir = output_dir
        self.written: list[Path] = []

    def path_for(self, document_id: str, configuration_id: str) -> Path:
        return self._output_dir / configuration_id / f"{document_id}.yaml"

    def write(self, result: DocumentResult) -> None:
        path = self.path_for(result.document_id, result.configuration_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(render_document_result(result), encoding="utf-8")
        self.written.append(path)
        logger.info(
            "Wrote %s (%d chunks, %d failed)",
            path,
            result.chunk_count,
            result.failed_count,
        )
