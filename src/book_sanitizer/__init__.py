"""Clean up OCR'd book excerpts by rewriting chunks through LLM endpoints."""

__version__ = "0.1.0"
