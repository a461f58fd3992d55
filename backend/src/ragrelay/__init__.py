"""RAG relay: retrieval-augmented generation in front of a remote LLM runner."""

from __future__ import annotations

__version__ = "0.1.0"
