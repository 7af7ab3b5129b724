"""Tests for the numpy cosine ANN backend."""

import pytest

from src.recall_engine.storage import NumpyAnnIndex


class TestNumpyAnnIndex:
    @pytest.mark.asyncio
    async def test_nearest_first(self, ann_index):
        await ann_index.add("x", [1.0, 0.0, 0.0], "X", "u")
        await ann_index.add("y", [0.0, 1.0, 0.0], "Y", "u")
        await ann_index.add("xy", [1.0, 1.0, 0.0], "XY", "u")

        matches = await ann_index.search([1.0, 0.1, 0.0], limit=2)

        assert [m.id for m in matches] == ["x", "xy"]
        assert matches[0].score == pytest.approx(1.0 / (1.01**0.5), rel=1e-4)

    @pytest.mark.asyncio
    async def test_readd_replaces_vector(self, ann_index):
        await ann_index.add("a", [1.0, 0.0])
        await ann_index.add("a", [0.0, 1.0])

        assert ann_index.size() == 1
        matches = await ann_index.search([0.0, 1.0], limit=1)
        assert matches[0].score == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_empty_index(self, ann_index):
        assert await ann_index.search([1.0, 0.0], limit=5) == []

    @pytest.mark.asyncio
    async def test_dimension_mismatch(self, ann_index):
        await ann_index.add("a", [1.0, 0.0])
        with pytest.raises(ValueError, match="dimension"):
            await ann_index.add("b", [1.0, 0.0, 0.0])

    @pytest.mark.asyncio
    async def test_serialize_load_into_fresh_instance(self, ann_index):
        await ann_index.add("a", [1.0, 0.0], "A", "https://a")
        await ann_index.add("b", [0.0, 1.0], "B", "https://b")
        data = await ann_index.serialize()

        restored = NumpyAnnIndex()
        await restored.load(data)

        assert restored.size() == 2
        assert [m.id for m in await restored.search([0.0, 1.0], limit=1)] == ["b"]

    @pytest.mark.asyncio
    async def test_load_rejects_mismatched_payload(self, ann_index):
        with pytest.raises(ValueError):
            await ann_index.load(b'{"ids": ["a"], "vectors": []}')

    @pytest.mark.asyncio
    async def test_reset_empties_and_rotates_token(self, ann_index):
        await ann_index.add("a", [1.0, 0.0])
        token = ann_index.identity_token()

        ann_index.reset()

        assert ann_index.size() == 0
        assert ann_index.identity_token() != token

    def test_tokens_unique_per_instance(self):
        assert NumpyAnnIndex().identity_token() != NumpyAnnIndex().identity_token()

    @pytest.mark.asyncio
    async def test_remove(self, ann_index):
        await ann_index.add("x", [1.0, 0.0, 0.0])
        await ann_index.add("y", [0.0, 1.0, 0.0])
        await ann_index.add("z", [0.0, 0.0, 1.0])

        assert await ann_index.remove("y") is True
        assert await ann_index.remove("y") is False

        assert ann_index.size() == 2
        assert [m.id for m in await ann_index.search([0.0, 0.0, 1.0], limit=3)] == ["z", "x"]

        await ann_index.remove("x")
        await ann_index.remove("z")
        assert await ann_index.search([1.0, 0.0, 0.0], limit=3) == []
