"""LLM clients for review rollups."""

from .openai_client import OpenAIEmbeddingClient, OpenAISummaryClient

__all__ = ["OpenAIEmbeddingClient", "OpenAISummaryClient"]
