"""Credit ledger models."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel

from taskgate.models.enums import LedgerEntryKind


class CreditLedgerEntry(BaseModel):
    """One immutable ledger line.

    ``amount`` is always the positive magnitude of the operation, ``delta`` is
    its effect on the account balance (reserve and refund entries move credit
    between "available" and "held" without changing the balance).
    """

    entry_id: UUID
    account_id: str
    kind: LedgerEntryKind
    amount: int
    delta: int
    reference_task_id: Optional[UUID] = None
    note: Optional[str] = None
    created_at: datetime


class AccountCredits(BaseModel):
    """Point-in-time credit summary for an account."""

    account_id: str
    balance: int
    held: int
    available: int
