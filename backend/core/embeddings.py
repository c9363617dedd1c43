"""Gemini embedding adapter.

Wraps the google-genai SDK to embed user questions for chunk retrieval.
The embedding call is billable, so results carry a token count for the
spending ledger.
"""

import os
from dataclasses import dataclass

import structlog
from google import genai
from google.genai import types

from backend.core.ledger import estimate_tokens_from_text

logger = structlog.get_logger(__name__)


class EmbeddingError(Exception):
    pass


@dataclass
class EmbeddingResult:
    """Vector plus the metering data for one embedding call."""
    vector: list[float]
    model: str
    tokens: int


_client = None


def _init_client():
    global _client
    api_key = os.environ.get("GEMINI_API_KEY", "")
    _client = genai.Client(api_key=api_key)


def embed_text(text: str) -> EmbeddingResult:
    """Embed a query with the RETRIEVAL_QUERY task type.

    Args:
        text: The text to embed.

    Returns:
        EmbeddingResult with the vector, the model used and an input-token
        estimate (the API does not report token counts for embeddings).

    Raises:
        EmbeddingError: If the API key is missing or the API call fails.
    """
    api_key = os.environ.get("GEMINI_API_KEY")
    if not api_key:
        raise EmbeddingError("GEMINI_API_KEY environment variable is not set.")

    if _client is None:
        _init_client()

    model_name = os.environ.get("EMBEDDING_MODEL", "gemini-embedding-001")

    try:
        response = _client.models.embed_content(
            model=model_name,
            contents=text,
            config=types.EmbedContentConfig(task_type="RETRIEVAL_QUERY"),
        )
        vector = response.embeddings[0].values

        logger.debug("embed.ok", model=model_name, dims=len(vector))
        return EmbeddingResult(vector=vector, model=model_name, tokens=estimate_tokens_from_text(text))

    except Exception as e:
        logger.error("embed.failed", error=str(e))
        raise EmbeddingError(f"Gemini API Error: {e}")
