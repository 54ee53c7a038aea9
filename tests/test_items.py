"""
Unit tests for batch item parsing and validation.
"""

from ai_batch_guard.core.errors import ErrorCode
from ai_batch_guard.core.items import BatchItem, ReferenceUrl, validate_items


def _item(scene_id="a", prompt="p", variants=1):
    return BatchItem(scene_id=scene_id, prompt=prompt, variants=variants)


class TestBatchItemFromDict:
    """Test payload parsing."""

    def test_parses_references(self):
        item = BatchItem.from_dict({
            "scene_id": "s1",
            "prompt": "castle",
            "variants": 2,
            "references": [{"url": "https://cdn/x.png?sig=abc", "locator": "gs://bucket/refs/x.png"}],
        })
        assert item.references == (ReferenceUrl(url="https://cdn/x.png?sig=abc", locator="gs://bucket/refs/x.png"),)
        assert item.to_dict()["references"][0]["locator"] == "gs://bucket/refs/x.png"

    def test_variants_default_to_one(self):
        assert BatchItem.from_dict({"scene_id": "s1", "prompt": "castle"}).variants == 1

    def test_mistyped_variants_become_invalid(self):
        assert BatchItem.from_dict({"scene_id": "s1", "prompt": "p", "variants": "2"}).variants == 0
        assert BatchItem.from_dict({"scene_id": "s1", "prompt": "p", "variants": True}).variants == 0

    def test_missing_fields_become_empty(self):
        item = BatchItem.from_dict({})
        assert item.scene_id == ""
        assert item.prompt == ""


class TestValidateItems:
    """Test batch and per-item limits."""

    def test_empty_batch_rejected(self):
        outcome = validate_items([], max_items=10, max_variants=3)
        assert outcome.batch_error.code == ErrorCode.EMPTY_BATCH
        assert outcome.accepted == []

    def test_batch_size_exceeded(self):
        items = [_item(scene_id=f"s{i}") for i in range(11)]
        outcome = validate_items(items, max_items=10, max_variants=3)
        assert outcome.batch_error.code == ErrorCode.BATCH_SIZE_EXCEEDED
        assert "Maximum 10" in outcome.batch_error.reason

    def test_valid_items_accepted(self):
        items = [_item("a"), _item("b", variants=3)]
        outcome = validate_items(items, max_items=10, max_variants=3)
        assert outcome.batch_error is None
        assert outcome.accepted == items
        assert outcome.rejected == []

    def test_invalid_items_rejected_individually(self):
        items = [
            _item("a"),
            _item("", prompt="p"),
            _item("c", prompt=""),
            _item("d", variants=0),
            _item("e", variants=4),
        ]
        outcome = validate_items(items, max_items=10, max_variants=3)
        assert [item.scene_id for item in outcome.accepted] == ["a"]
        assert [r.code for r in outcome.rejected] == [ErrorCode.INVALID_ITEM] * 4
        assert outcome.rejected[3].reason == "variants must be between 1 and 3"

    def test_duplicate_scene_rejected(self):
        outcome = validate_items([_item("a"), _item("a", prompt="other")], max_items=10, max_variants=3)
        assert len(outcome.accepted) == 1
        assert outcome.rejected[0].code == ErrorCode.DUPLICATE_SCENE
        assert outcome.rejected[0].scene_id == "a"
