"""Embedding dispatch to an isolated worker, and semantic search."""

from lumina_ai.embeddings.correlator import ProcessWorkerChannel, TaskCorrelator, WorkerChannel
from lumina_ai.embeddings.search import Note, VaultIndex, cosine_similarity

__all__ = [
    "Note",
    "ProcessWorkerChannel",
    "TaskCorrelator",
    "VaultIndex",
    "WorkerChannel",
    "cosine_similarity",
]
