"""Embedding worker: runs in its own process, talks only through queues.

Request:  ``{"id": str, "type": "embed", "payload": str | list[str]}``
Reply:    ``{"type": "progress"|"embed", "status": "progress"|"ready"|"complete"|"error",
            "id"?, "result"?, "error"?, "progress"?}``

A ``None`` request shuts the worker down; it answers with a ``None`` reply
so the reader on the other side can stop too.
"""

from __future__ import annotations

import logging
import multiprocessing
import queue as queue_mod
from typing import Any, Callable, Sequence

_logger = logging.getLogger(__name__)

Embedder = Callable[[list[str]], Sequence[Sequence[float]]]
EmbedderFactory = Callable[[], Embedder]

MODEL_NAME = "all-MiniLM-L6-v2"


def default_embedder_factory() -> Embedder:
    """Load the ONNX MiniLM-L6-v2 model shipped with chromadb.

    Mean-pooled, L2-normalised sentence embeddings (384 dims).  The model
    is downloaded to the chromadb cache on first use.
    """
    from chromadb.utils.embedding_functions import DefaultEmbeddingFunction

    function = DefaultEmbeddingFunction()

    def embed(texts: list[str]) -> list[list[float]]:
        return [[float(x) for x in vector] for vector in function(texts)]

    return embed


def _handle(request: dict[str, Any], embedder: Embedder) -> dict[str, Any]:
    payload = request.get("payload")
    if isinstance(payload, str):
        vectors = embedder([payload])
        result: Any = [float(x) for x in vectors[0]]
    elif isinstance(payload, (list, tuple)) and all(isinstance(p, str) for p in payload):
        vectors = embedder(list(payload))
        result = [[float(x) for x in v] for v in vectors]
    else:
        raise ValueError("payload must be a string or a list of strings")
    return {
        "id": request.get("id"),
        "type": request.get("type"),
        "status": "complete",
        "result": result,
    }


def run_worker(
    requests: "multiprocessing.Queue[Any] | queue_mod.Queue[Any]",
    replies: "multiprocessing.Queue[Any] | queue_mod.Queue[Any]",
    embedder_factory: EmbedderFactory = default_embedder_factory,
) -> None:
    """Serve embedding requests until the ``None`` sentinel arrives."""
    embedder: Embedder | None = None

    while True:
        request = requests.get()
        if request is None:
            replies.put(None)
            return

        task_id = request.get("id")
        kind = request.get("type")
        try:
            if kind != "embed":
                raise ValueError(f"Unknown task type: {kind!r}")
            if embedder is None:
                replies.put({"type": "progress", "status": "progress", "progress": 0.0})
                embedder = embedder_factory()
                replies.put({"type": "progress", "status": "ready", "progress": 100.0})
            replies.put(_handle(request, embedder))
        except Exception as e:
            _logger.exception("Embedding task %s failed", task_id)
            replies.put({
                "id": task_id,
                "type": kind,
                "status": "error",
                "error": str(e) or type(e).__name__,
            })
