from pydantic import BaseModel, Field, model_validator
from typing import Optional

# Base schemas
class LegalRequestCreate(BaseModel):
    title: Optional[str] = Field(None, max_length=255)
    description: str = Field(..., min_length=1)

class RequestPatch(BaseModel):
    title: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = Field(None, min_length=1)

    @model_validator(mode="after")
    def require_a_field(self):
        if self.title is None and self.description is None:
            raise ValueError("Nothing to update")
        return self

class ProposalCreate(BaseModel):
    price: int = Field(..., gt=0)
    text: str = Field(..., min_length=1)
    estimated_duration: Optional[str] = Field(None, max_length=100)

class ProposalContentPatch(BaseModel):
    """Fields a lawyer may still change while the proposal is pending."""

    price: Optional[int] = Field(None, gt=0)
    text: Optional[str] = Field(None, min_length=1)
    estimated_duration: Optional[str] = Field(None, max_length=100)

    @model_validator(mode="after")
    def require_a_field(self):
        if self.price is None and self.text is None and self.estimated_duration is None:
            raise ValueError("Nothing to update")
        return self

class ProposalStats(BaseModel):
    total: int
    pending: int
    accepted: int
    rejected: int
    average_price: Optional[float] = None
