"""Lumina AI: streaming chat, embeddings and image generation for the Lumina editor."""

__version__ = "0.3.0"
