"""Unit tests for context assembly."""

from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest

from backend.api.events import Source
from backend.api.schemas import MessageRecord
from backend.core.context_builder import _estimate_context_tokens, ContextBundle, build_context


@pytest.fixture
def mock_documents(sample_sources):
    documents = MagicMock()
    documents.search_chunks.return_value = list(sample_sources)
    return documents


@pytest.fixture
def mock_embedding():
    return [0.1] * 3072


class TestBuildContext:

    @patch("backend.core.context_builder.get_recent_messages", return_value=[])
    def test_sources_retrieved(self, mock_recent, mock_documents, mock_embedding, sample_sources):
        bundle = build_context("s1", mock_embedding, mock_documents, k_results=3, document_ids=["doc-1"])
        assert bundle.sources == sample_sources
        mock_documents.search_chunks.assert_called_once_with(mock_embedding, limit=3, document_ids=["doc-1"])

    @patch("backend.core.context_builder.get_recent_messages", return_value=[])
    def test_no_embedding_skips_retrieval(self, mock_recent, mock_documents):
        bundle = build_context("s1", None, mock_documents)
        assert bundle.sources == []
        mock_documents.search_chunks.assert_not_called()

    @patch("backend.core.context_builder.get_recent_messages")
    def test_recent_messages_included(self, mock_recent, mock_documents, mock_embedding, monkeypatch):
        monkeypatch.setenv("HISTORY_RECENT_K", "2")
        records = [
            MessageRecord(role="user", content="hello", timestamp=datetime.now()),
            MessageRecord(role="assistant", content="hi", timestamp=datetime.now()),
        ]
        mock_recent.return_value = records
        bundle = build_context("s1", mock_embedding, mock_documents)
        assert bundle.recent_messages == records
        mock_recent.assert_called_once_with("s1", limit=2)

    @patch("backend.core.context_builder.get_recent_messages", side_effect=Exception("db locked"))
    def test_failures_graceful(self, mock_recent, mock_documents, mock_embedding):
        mock_documents.search_chunks.side_effect = Exception("connection refused")
        bundle = build_context("s1", mock_embedding, mock_documents)
        assert bundle.sources == []
        assert bundle.recent_messages == []


class TestTokenBudgeting:

    def test_estimate_context_tokens(self):
        bundle = ContextBundle(
            sources=[Source(id="a", title="A", content="x" * 40)],
            recent_messages=[MessageRecord(role="user", content="y" * 8, timestamp=datetime.now())],
        )
        assert _estimate_context_tokens(bundle) == 12

    @patch("backend.core.context_builder.get_recent_messages", return_value=[])
    def test_sources_trimmed_from_the_tail(self, mock_recent, mock_documents, mock_embedding, monkeypatch):
        monkeypatch.setenv("CONTEXT_TOKEN_BUDGET", "1500")
        mock_documents.search_chunks.return_value = [
            Source(id=str(i), title=f"Chunk {i}", content=c * 4000) for i, c in enumerate("xyz")
        ]
        bundle = build_context("s1", mock_embedding, mock_documents)
        assert [s.id for s in bundle.sources] == ["0"]

    @patch("backend.core.context_builder.get_recent_messages", return_value=[])
    def test_single_source_never_dropped(self, mock_recent, mock_documents, mock_embedding, monkeypatch):
        monkeypatch.setenv("CONTEXT_TOKEN_BUDGET", "10")
        mock_documents.search_chunks.return_value = [Source(id="big", title="Big", content="x" * 4000)]
        bundle = build_context("s1", mock_embedding, mock_documents)
        assert len(bundle.sources) == 1
