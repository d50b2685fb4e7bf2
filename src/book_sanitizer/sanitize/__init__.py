"""Chunk dispatch pipeline: chunk, rewrite through configured backends, reassemble."""
