from pydantic import BaseModel
from typing import List, Optional
from datetime import date

class CommissionSplit(BaseModel):
    price: int
    commission: int
    lawyer_payout: int

class DailyTransactionTotals(BaseModel):
    day: date
    count: int
    amount: int
    commission: int

class TransactionStats(BaseModel):
    total: int
    total_amount: int
    total_commission: int
    average_amount: Optional[float] = None
    daily: List[DailyTransactionTotals] = []
