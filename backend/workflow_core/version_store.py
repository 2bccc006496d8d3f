"""
VERSION STORE

Provides:
1. Immutable, append-only snapshots of an entity plus its child items
2. 1-based monotonic version numbers per entity (count + 1, unique index)
3. Field-level diff between two snapshots over a declared field set
4. Amendment classification from the resulting changes

Diff rules:
- Only TRACKED_FIELDS are compared, in declaration order, by structural
  equality. Untracked fields are ignored even if they changed.
- Child items are matched by their stable 'id' in from-version order;
  quantity changes are SCOPE, unit_price changes are FINANCIAL.
- Items added or removed between versions are not reported (no stable
  counterpart to compare against).
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
import copy
import json
import logging

from .errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


class ChangeCategory:
    FINANCIAL = "FINANCIAL"
    SCHEDULE = "SCHEDULE"
    TERMS = "TERMS"
    SCOPE = "SCOPE"
    GENERAL = "GENERAL"


class AmendmentType:
    QUANTITY_CHANGE = "QUANTITY_CHANGE"
    PRICE_CHANGE = "PRICE_CHANGE"
    DELIVERY_CHANGE = "DELIVERY_CHANGE"
    TERMS_CHANGE = "TERMS_CHANGE"
    GENERAL = "GENERAL"


# (field, label, category)
TRACKED_FIELDS = (
    ("subtotal", "Subtotal", ChangeCategory.FINANCIAL),
    ("grand_total", "Grand Total", ChangeCategory.FINANCIAL),
    ("expected_delivery_date", "Expected Delivery Date", ChangeCategory.SCHEDULE),
    ("payment_terms", "Payment Terms", ChangeCategory.TERMS),
    ("delivery_address", "Delivery Address", ChangeCategory.TERMS),
)


@dataclass(frozen=True)
class Change:
    field: str
    field_label: str
    old_value: Any
    new_value: Any
    old_value_display: str
    new_value_display: str
    category: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "field_label": self.field_label,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "old_value_display": self.old_value_display,
            "new_value_display": self.new_value_display,
            "category": self.category,
        }


@dataclass(frozen=True)
class VersionSnapshot:
    entity_id: str
    version_number: int
    snapshot: Dict[str, Any]
    snapshot_items: List[Dict[str, Any]]
    amendment_id: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    notes: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "version_number": self.version_number,
            "snapshot": copy.deepcopy(self.snapshot),
            "snapshot_items": copy.deepcopy(self.snapshot_items),
            "amendment_id": self.amendment_id,
            "created_by": self.created_by,
            "created_at": self.created_at,
            "notes": self.notes,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "VersionSnapshot":
        return cls(
            entity_id=doc["entity_id"],
            version_number=int(doc["version_number"]),
            snapshot=copy.deepcopy(doc.get("snapshot") or {}),
            snapshot_items=copy.deepcopy(doc.get("snapshot_items") or []),
            amendment_id=doc.get("amendment_id"),
            created_by=doc.get("created_by"),
            created_at=doc.get("created_at"),
            notes=doc.get("notes"),
        )


# =============================================================================
# PURE DIFFING
# =============================================================================

def format_value(value: Any) -> str:
    """Display form of a snapshot value."""
    if value is None:
        return "N/A"
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, (int, float, Decimal)):
        return f"{value:.2f}"
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str, sort_keys=True)
    return str(value)


def diff_snapshots(
    from_snapshot: Dict[str, Any],
    to_snapshot: Dict[str, Any],
    from_items: List[Dict[str, Any]],
    to_items: List[Dict[str, Any]]
) -> List[Change]:
    changes: List[Change] = []

    for field_name, label, category in TRACKED_FIELDS:
        old_value = from_snapshot.get(field_name)
        new_value = to_snapshot.get(field_name)
        # == on plain dicts / lists / scalars is structural
        if old_value != new_value:
            changes.append(Change(
                field=field_name,
                field_label=label,
                old_value=old_value,
                new_value=new_value,
                old_value_display=format_value(old_value),
                new_value_display=format_value(new_value),
                category=category,
            ))

    to_by_id = {item.get("id"): item for item in to_items if item.get("id") is not None}

    for index, from_item in enumerate(from_items):
        to_item = to_by_id.get(from_item.get("id"))
        if to_item is None:
            continue

        if from_item.get("quantity") != to_item.get("quantity"):
            changes.append(Change(
                field=f"items[{index}].quantity",
                field_label=f"Item {index + 1} Quantity",
                old_value=from_item.get("quantity"),
                new_value=to_item.get("quantity"),
                old_value_display=str(from_item.get("quantity")),
                new_value_display=str(to_item.get("quantity")),
                category=ChangeCategory.SCOPE,
            ))

        if from_item.get("unit_price") != to_item.get("unit_price"):
            changes.append(Change(
                field=f"items[{index}].unit_price",
                field_label=f"Item {index + 1} Unit Price",
                old_value=from_item.get("unit_price"),
                new_value=to_item.get("unit_price"),
                old_value_display=format_value(from_item.get("unit_price")),
                new_value_display=format_value(to_item.get("unit_price")),
                category=ChangeCategory.FINANCIAL,
            ))

    return changes


def classify_changes(changes: List[Change]) -> str:
    """QUANTITY > PRICE > DELIVERY > TERMS > GENERAL."""
    if any("quantity" in c.field for c in changes):
        return AmendmentType.QUANTITY_CHANGE
    if any("price" in c.field.lower() or "total" in c.field.lower() for c in changes):
        return AmendmentType.PRICE_CHANGE
    if any("delivery" in c.field for c in changes):
        return AmendmentType.DELIVERY_CHANGE
    if any(c.category == ChangeCategory.TERMS for c in changes):
        return AmendmentType.TERMS_CHANGE
    return AmendmentType.GENERAL


# =============================================================================
# STORE
# =============================================================================

class VersionStore:
    """Snapshots in the entity_versions collection via the repository."""

    def __init__(self, repository):
        self.repository = repository

    async def snapshot(
        self,
        entity_id: str,
        entity: Dict[str, Any],
        child_items: Optional[List[Dict[str, Any]]] = None,
        amendment_id: Optional[str] = None,
        created_by: Optional[str] = None,
        notes: Optional[str] = None,
        session=None
    ) -> int:
        """
        Store a full copy of entity and child_items as the next version.

        Two writers racing for the same number hit the unique
        (entity_id, version_number) index and the loser gets
        ConcurrencyConflictError.
        """
        if not entity_id:
            raise ValidationError("entity_id is required for a snapshot")

        existing = await self.repository.count_versions(entity_id, session=session)
        version_number = existing + 1

        record = VersionSnapshot(
            entity_id=entity_id,
            version_number=version_number,
            snapshot=copy.deepcopy(entity),
            snapshot_items=copy.deepcopy(child_items or []),
            amendment_id=amendment_id,
            created_by=created_by,
            created_at=datetime.utcnow(),
            notes=notes,
        )
        await self.repository.insert_version(record.to_document(), session=session)

        logger.info(f"[VERSION] Created snapshot v{version_number} for {entity_id}")
        return version_number

    async def get_versions(self, entity_id: str, session=None) -> List[VersionSnapshot]:
        docs = await self.repository.find_versions(entity_id, session=session)
        return [VersionSnapshot.from_document(d) for d in docs]

    async def get_version(self, entity_id: str, version_number: int, session=None) -> VersionSnapshot:
        doc = await self.repository.find_version(entity_id, version_number, session=session)
        if not doc:
            raise NotFoundError("Version", f"{entity_id} v{version_number}")
        return VersionSnapshot.from_document(doc)

    async def diff(self, entity_id: str, from_version: int, to_version: int, session=None) -> List[Change]:
        older = await self.get_version(entity_id, from_version, session=session)
        newer = await self.get_version(entity_id, to_version, session=session)
        return diff_snapshots(older.snapshot, newer.snapshot, older.snapshot_items, newer.snapshot_items)

    @staticmethod
    def classify(changes: List[Change]) -> str:
        return classify_changes(changes)
