from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List
from datetime import datetime
from legalmarket.models import BalanceType, LedgerEntryKind

class BalanceChange(BaseModel):
    amount: int = Field(..., gt=0)
    kind: LedgerEntryKind
    description: Optional[str] = Field(None, max_length=255)
    balance_type: BalanceType = BalanceType.CREDITS

class LedgerEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    balance_type: BalanceType
    kind: LedgerEntryKind
    amount: int
    balance_after: int
    description: Optional[str] = None
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    created_at: datetime

class LedgerHistory(BaseModel):
    entries: List[LedgerEntryResponse]
    page: int
    limit: int
    total_count: int
    total_pages: int

class BalanceCheck(BaseModel):
    user_id: str
    balance_type: BalanceType
    cached_balance: int
    ledger_sum: int

    @property
    def consistent(self) -> bool:
        return self.cached_balance == self.ledger_sum
