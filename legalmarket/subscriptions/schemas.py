from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import Optional, List
from decimal import Decimal
from legalmarket.models import BillingCycle

# Plan catalog
class PlanCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    price: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    token_limit: int = Field(..., ge=0)
    features: Optional[List[str]] = None
    is_active: bool = True

class PlanPatch(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    price: Optional[Decimal] = Field(None, ge=0, max_digits=10, decimal_places=2)
    token_limit: Optional[int] = Field(None, ge=0)
    features: Optional[List[str]] = None
    is_active: Optional[bool] = None

    @model_validator(mode="after")
    def require_a_field(self):
        if all(
            value is None
            for value in (self.name, self.price, self.token_limit, self.features, self.is_active)
        ):
            raise ValueError("Nothing to update")
        return self

class PlanResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    price: Decimal
    token_limit: int
    features: Optional[List[str]] = None
    is_active: bool

# Client subscriptions
class PaymentConfirmation(BaseModel):
    provider: str = Field(..., min_length=1, max_length=50)
    provider_ref: str = Field(..., min_length=1, max_length=100)
    duration: BillingCycle

class TrialRequest(BaseModel):
    days: int = Field(..., gt=0, le=365)

# Lawyer subscriptions
class LawyerSubscriptionResponse(BaseModel):
    plan: Optional[PlanResponse] = None
    token_balance: int = 0

class ExpirySweepResult(BaseModel):
    expired: int
    abandoned: int

class TokenResetResult(BaseModel):
    plan_name: str
    token_limit: int
    users_updated: int
