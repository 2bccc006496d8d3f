"""
LEDGER ACCOUNTS

One entitled / used / pending / available record per
(subject, resource type, period): a user's annual leave of one type, a
user's comp-off balance, a project's budget for a fiscal year.

INVARIANT:
    available = entitled + carry_forward - used - pending

available is recomputed from the four base fields on every read and every
mutation. The stored value is informational only and never trusted.

Operations (each one atomic read-modify-write):
    reserve  pending += amount                 (submit)
    commit   pending -= amount, used += amount (final approval)
    release  pending -= amount                 (reject / cancel while pending)
    grant    entitled += amount                (earned credit, e.g. comp-off)
    debit    used += amount                    (administrative correction / expiry)
    refund   used -= amount                    (cancel after approval)
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Union
import logging

from .errors import InsufficientBalanceError, NotFoundError, ValidationError
from .financial_precision import (
    ZERO,
    non_negative,
    to_decimal,
    to_float,
    validate_non_negative,
    validate_positive,
)

logger = logging.getLogger(__name__)


class LedgerOp:
    RESERVE = "RESERVE"
    COMMIT = "COMMIT"
    RELEASE = "RELEASE"
    GRANT = "GRANT"
    DEBIT = "DEBIT"
    REFUND = "REFUND"


def normalize_period(period: Union[int, str]) -> Union[int, str]:
    """Fiscal years are stored as integers, whether they arrive as 2025 or "2025"."""
    if isinstance(period, str) and period.strip().isdigit():
        return int(period.strip())
    return period


@dataclass(frozen=True)
class LedgerKey:
    subject_id: str
    resource_type: str
    period: Union[int, str]

    def __post_init__(self):
        object.__setattr__(self, "period", normalize_period(self.period))

    def as_filter(self) -> Dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "resource_type": self.resource_type,
            "period": self.period,
        }

    def __str__(self):
        return f"{self.subject_id}/{self.resource_type}/{self.period}"


@dataclass(frozen=True)
class LedgerAccount:
    subject_id: str
    resource_type: str
    period: Union[int, str]
    entitled: Decimal = ZERO
    used: Decimal = ZERO
    pending: Decimal = ZERO
    carry_forward: Decimal = ZERO
    id: Optional[str] = None
    revision: int = 0
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def key(self) -> LedgerKey:
        return LedgerKey(self.subject_id, self.resource_type, self.period)

    @property
    def available(self) -> Decimal:
        return self.entitled + self.carry_forward - self.used - self.pending

    # =========================================================================
    # OPERATIONS (pure; return a new account)
    # =========================================================================

    def reserve(self, amount, allow_overdraft: bool = False) -> "LedgerAccount":
        amount = validate_positive(amount, "amount")
        return self._checked(replace(self, pending=self.pending + amount), amount, LedgerOp.RESERVE, allow_overdraft)

    def commit(self, amount, allow_overdraft: bool = False) -> "LedgerAccount":
        amount = validate_positive(amount, "amount")
        updated = replace(self, pending=non_negative(self.pending - amount), used=self.used + amount)
        return self._checked(updated, amount, LedgerOp.COMMIT, allow_overdraft)

    def release(self, amount) -> "LedgerAccount":
        amount = validate_positive(amount, "amount")
        return replace(self, pending=non_negative(self.pending - amount))

    def grant(self, amount) -> "LedgerAccount":
        amount = validate_positive(amount, "amount")
        return replace(self, entitled=self.entitled + amount)

    def debit(self, amount, allow_overdraft: bool = False) -> "LedgerAccount":
        amount = validate_positive(amount, "amount")
        return self._checked(replace(self, used=self.used + amount), amount, LedgerOp.DEBIT, allow_overdraft)

    def refund(self, amount) -> "LedgerAccount":
        amount = validate_positive(amount, "amount")
        return replace(self, used=non_negative(self.used - amount))

    def apply(self, op: str, amount, allow_overdraft: bool = False) -> "LedgerAccount":
        if op == LedgerOp.RESERVE:
            return self.reserve(amount, allow_overdraft)
        if op == LedgerOp.COMMIT:
            return self.commit(amount, allow_overdraft)
        if op == LedgerOp.RELEASE:
            return self.release(amount)
        if op == LedgerOp.GRANT:
            return self.grant(amount)
        if op == LedgerOp.DEBIT:
            return self.debit(amount, allow_overdraft)
        if op == LedgerOp.REFUND:
            return self.refund(amount)
        raise ValidationError(f"Unknown ledger operation: {op}")

    def _checked(self, updated: "LedgerAccount", amount: Decimal, op: str, allow_overdraft: bool) -> "LedgerAccount":
        if updated.available < ZERO:
            if not allow_overdraft:
                raise InsufficientBalanceError(str(self.key), amount, self.available)
            logger.warning(
                f"[LEDGER] Overdraft on {self.key} by {op} {amount}: "
                f"available {updated.available}"
            )
        return updated

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def to_document(self) -> Dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "resource_type": self.resource_type,
            "period": self.period,
            "entitled": to_float(self.entitled),
            "used": to_float(self.used),
            "pending": to_float(self.pending),
            "carry_forward": to_float(self.carry_forward),
            "available": to_float(self.available),
            "revision": self.revision,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def balance_fields(self) -> Dict[str, Any]:
        """The subset written on every mutation."""
        doc = self.to_document()
        return {k: doc[k] for k in ("entitled", "used", "pending", "carry_forward", "available")}

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "LedgerAccount":
        # Missing or negative components are healed to zero
        return cls(
            id=str(doc["_id"]) if doc.get("_id") is not None else None,
            subject_id=doc["subject_id"],
            resource_type=doc["resource_type"],
            period=doc["period"],
            entitled=non_negative(doc.get("entitled")),
            used=non_negative(doc.get("used")),
            pending=non_negative(doc.get("pending")),
            carry_forward=non_negative(doc.get("carry_forward")),
            revision=int(doc.get("revision", 0)),
            created_at=doc.get("created_at") or datetime.utcnow(),
            updated_at=doc.get("updated_at") or datetime.utcnow(),
        )


@dataclass(frozen=True)
class LedgerPolicy:
    """
    How a resource type touches its ledger.

    subject_field / resource_type_field / amount_field name document
    attributes or payload fields; resource_type and fixed_amount are constants
    used when the field form is not set. Each on_* entry is a LedgerOp or None.
    """
    subject_field: str = "owner_id"
    resource_type: Optional[str] = None
    resource_type_field: Optional[str] = None
    period_field: str = "fiscal_year"
    amount_field: Optional[str] = None
    fixed_amount: Optional[Decimal] = None
    allow_overdraft: bool = False
    on_submit: Optional[str] = None
    on_approve: Optional[str] = None
    on_reject: Optional[str] = None
    on_cancel_reserved: Optional[str] = None
    on_cancel_committed: Optional[str] = None

    def key_for(self, document) -> LedgerKey:
        subject_id = document.get(self.subject_field)
        resource_type = (
            document.get(self.resource_type_field) if self.resource_type_field else self.resource_type
        )
        period = document.get(self.period_field)
        if not subject_id or not resource_type or period is None:
            raise ValidationError(
                f"Cannot resolve ledger account for {document.doc_type} {document.id}"
            )
        return LedgerKey(str(subject_id), str(resource_type), period)

    def amount_for(self, document) -> Decimal:
        if self.fixed_amount is not None:
            return to_decimal(self.fixed_amount)
        if self.amount_field is None:
            raise ValidationError(f"No ledger amount configured for {document.doc_type}")
        return validate_positive(document.get(self.amount_field), self.amount_field)


# =============================================================================
# SERVICE
# =============================================================================

class LedgerService:
    """
    Atomic ledger mutations against the repository.

    Every write is conditional on the revision read in the same session, so
    a concurrent writer makes this call fail with ConcurrencyConflictError
    instead of silently double-applying.
    """

    def __init__(self, repository):
        self.repository = repository

    async def open_account(
        self,
        key: LedgerKey,
        entitled=0,
        carry_forward=0,
        session=None
    ) -> LedgerAccount:
        """Get-or-create. Existing accounts are returned untouched."""
        validate_non_negative(entitled, "entitled")
        validate_non_negative(carry_forward, "carry_forward")
        seed = LedgerAccount(
            subject_id=key.subject_id,
            resource_type=key.resource_type,
            period=key.period,
            entitled=to_decimal(entitled),
            carry_forward=to_decimal(carry_forward),
        )
        doc = await self.repository.upsert_ledger(key.as_filter(), seed.to_document(), session=session)
        return LedgerAccount.from_document(doc)

    async def get_account(self, key: LedgerKey, session=None) -> LedgerAccount:
        doc = await self.repository.find_ledger(key.as_filter(), session=session)
        if not doc:
            raise NotFoundError("Ledger account", str(key))
        return LedgerAccount.from_document(doc)

    async def apply(
        self,
        key: LedgerKey,
        op: str,
        amount,
        allow_overdraft: bool = False,
        actor_id: Optional[str] = None,
        session=None
    ) -> LedgerAccount:
        """
        Read-modify-write one account. With session=None the call opens its
        own transaction; otherwise it joins the caller's.
        """
        if session is None:
            async with self.repository.transaction() as own_session:
                return await self._apply(key, op, amount, allow_overdraft, actor_id, own_session)
        return await self._apply(key, op, amount, allow_overdraft, actor_id, session)

    async def _apply(self, key, op, amount, allow_overdraft, actor_id, session) -> LedgerAccount:
        account = await self.get_account(key, session=session)
        updated = account.apply(op, amount, allow_overdraft=allow_overdraft)

        fields = updated.balance_fields()
        fields["updated_at"] = datetime.utcnow()
        fields["updated_by"] = actor_id

        await self.repository.update_ledger(account.id, account.revision, fields, session=session)

        logger.info(
            f"[LEDGER] {op} {amount} on {key}: "
            f"pending {account.pending}->{updated.pending}, "
            f"used {account.used}->{updated.used}, "
            f"available {account.available}->{updated.available}"
        )
        return replace(updated, revision=account.revision + 1, updated_at=fields["updated_at"])

    async def reserve(self, key: LedgerKey, amount, allow_overdraft: bool = False, **kwargs) -> LedgerAccount:
        return await self.apply(key, LedgerOp.RESERVE, amount, allow_overdraft, **kwargs)

    async def commit(self, key: LedgerKey, amount, allow_overdraft: bool = False, **kwargs) -> LedgerAccount:
        return await self.apply(key, LedgerOp.COMMIT, amount, allow_overdraft, **kwargs)

    async def release(self, key: LedgerKey, amount, **kwargs) -> LedgerAccount:
        return await self.apply(key, LedgerOp.RELEASE, amount, **kwargs)

    async def grant(self, key: LedgerKey, amount, **kwargs) -> LedgerAccount:
        return await self.apply(key, LedgerOp.GRANT, amount, **kwargs)

    async def debit(self, key: LedgerKey, amount, allow_overdraft: bool = False, **kwargs) -> LedgerAccount:
        return await self.apply(key, LedgerOp.DEBIT, amount, allow_overdraft, **kwargs)

    async def refund(self, key: LedgerKey, amount, **kwargs) -> LedgerAccount:
        return await self.apply(key, LedgerOp.REFUND, amount, **kwargs)
