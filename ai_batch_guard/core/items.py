"""
Batch item model and validation.

Parses raw submission payloads and splits them into accepted items and
per-item rejections before any admission check runs.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .errors import ErrorCode


@dataclass(frozen=True)
class ReferenceUrl:
    """A time-limited reference URL and the stable locator it was signed from."""
    url: str
    locator: str


@dataclass(frozen=True)
class BatchItem:
    """One generation unit: a scene rendered into ``variants`` images."""
    scene_id: str
    prompt: str
    variants: int
    references: Tuple[ReferenceUrl, ...] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BatchItem":
        """Build an item from a submission payload entry.

        Scene id and prompt are whitespace-trimmed. Missing or mistyped
        fields are carried through as empty values so validation can
        report them per item instead of failing the whole payload.
        """
        references = tuple(
            ReferenceUrl(url=str(ref.get("url", "")), locator=str(ref.get("locator", "")))
            for ref in data.get("references") or []
            if isinstance(ref, Mapping)
        )
        variants = data.get("variants", 1)
        if isinstance(variants, bool) or not isinstance(variants, int):
            variants = 0
        return cls(
            scene_id=str(data.get("scene_id") or "").strip(),
            prompt=str(data.get("prompt") or "").strip(),
            variants=variants,
            references=references,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scene_id": self.scene_id,
            "prompt": self.prompt,
            "variants": self.variants,
            "references": [{"url": ref.url, "locator": ref.locator} for ref in self.references],
        }


@dataclass(frozen=True)
class ItemRejection:
    """Why a single item (or the whole submission) was not accepted."""
    scene_id: str
    code: ErrorCode
    reason: str

    def to_dict(self) -> Dict[str, str]:
        return {"scene_id": self.scene_id, "code": self.code.value, "reason": self.reason}


@dataclass
class ValidationOutcome:
    """Result of validating a submission against batch limits."""
    accepted: List[BatchItem] = field(default_factory=list)
    rejected: List[ItemRejection] = field(default_factory=list)
    batch_error: Optional[ItemRejection] = None


def validate_items(
    items: Sequence[BatchItem],
    max_items: int,
    max_variants: int,
) -> ValidationOutcome:
    """Validate items against batch and per-item limits.

    Args:
        items: Parsed batch items in submission order
        max_items: Maximum number of items in one batch
        max_variants: Maximum variants per item

    Returns:
        ValidationOutcome; ``batch_error`` is set when the whole
        submission must be rejected
    """
    outcome = ValidationOutcome()

    if not items:
        outcome.batch_error = ItemRejection("*", ErrorCode.EMPTY_BATCH, "Batch contains no items")
        return outcome

    if len(items) > max_items:
        outcome.batch_error = ItemRejection(
            "*",
            ErrorCode.BATCH_SIZE_EXCEEDED,
            f"Maximum {max_items} items per batch, got {len(items)}",
        )
        return outcome

    seen = set()
    for item in items:
        if not item.scene_id:
            outcome.rejected.append(ItemRejection("", ErrorCode.INVALID_ITEM, "scene_id is required"))
        elif item.scene_id in seen:
            outcome.rejected.append(ItemRejection(
                item.scene_id, ErrorCode.DUPLICATE_SCENE, f"Duplicate scene_id '{item.scene_id}'"
            ))
        elif not item.prompt:
            outcome.rejected.append(ItemRejection(item.scene_id, ErrorCode.INVALID_ITEM, "prompt is required"))
        elif not 1 <= item.variants <= max_variants:
            outcome.rejected.append(ItemRejection(
                item.scene_id,
                ErrorCode.INVALID_ITEM,
                f"variants must be between 1 and {max_variants}",
            ))
        else:
            outcome.accepted.append(item)
        if item.scene_id:
            seen.add(item.scene_id)

    return outcome
