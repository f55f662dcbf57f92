"""Semantic understanding module using LLM inference."""

from .inference import DocumentExtractionClient, EmbeddingClient

__all__ = ["DocumentExtractionClient", "EmbeddingClient"]
