"""
Unit Tests for memory_types helpers.
"""

import dataclasses

import pytest

from memfabric.backend.modules.memory.memory_types import (
    UNSCOPED,
    Attribution,
    CompressionResult,
    ExecutionStats,
    MemoryFilter,
    MemoryResult,
    format_context,
)


class TestFilterAndAttribution:
    """Test MemoryFilter / Attribution conversions."""

    def test_filter_drops_unset_fields(self):
        assert MemoryFilter(entity_id="u1").as_dict() == {"entity_id": "u1"}
        assert MemoryFilter().is_empty

    def test_attribution_to_filter(self):
        f = Attribution("u1", "p1", "s1").to_filter()
        assert f == MemoryFilter(entity_id="u1", process_id="p1", session_id="s1")

    def test_unscoped_metadata_is_empty(self):
        assert UNSCOPED.to_metadata() == {}
        assert UNSCOPED.to_filter().is_empty

    def test_attribution_is_immutable(self):
        attribution = Attribution("u1", "p1")
        with pytest.raises(dataclasses.FrozenInstanceError):
            attribution.entity_id = "u2"


class TestResultsAndStats:
    """Test result formatting and stats."""

    def test_format_context(self):
        results = [
            MemoryResult(id="1", content="likes tea", distance=0.0),
            MemoryResult(id="2", content="lives in Oslo", distance=0.25),
        ]
        assert format_context(results) == "- likes tea (score: 0.0)\n- lives in Oslo (score: 0.25)"

    def test_format_context_empty(self):
        assert format_context([]) == ""

    def test_result_to_dict_copies_metadata(self):
        result = MemoryResult(id="1", content="x", metadata={"role": "user"}, distance=1.5)
        data = result.to_dict()
        data["metadata"]["role"] = "assistant"
        assert result.metadata["role"] == "user"
        assert data["distance"] == 1.5

    def test_stats_overwritten_each_run(self):
        stats = ExecutionStats()
        assert stats.to_dict() == {"last_run": None}

        stats.record(3, 12.5, "first")
        stats.record(1, 2.0, "second")

        assert stats.last_run.used_query == "second"
        assert stats.to_dict()["last_run"]["context_chunks"] == 1

    def test_compression_result_flag(self):
        assert not CompressionResult("x").is_compressed
        assert CompressionResult("x", {"is_compressed": True, "original_content": "xx"}).is_compressed
