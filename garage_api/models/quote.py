from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class QuoteStatus(str, Enum):
    PENDING = "pending"
    CONVERTED = "converted"
    REJECTED = "rejected"


class InvoiceStatus(str, Enum):
    PAID = "paid"
    UNPAID = "unpaid"


class ServiceLine(BaseModel):
    model_config = ConfigDict(extra="allow")

    serviceId: int
    quantity: float
    price: float


class _Document(BaseModel):
    """Fields shared by quotes and invoices."""

    model_config = ConfigDict(extra="allow", use_enum_values=True)

    id: int
    number: str = Field(min_length=1)
    clientId: int
    vehicleId: int
    services: List[ServiceLine] = Field(default_factory=list)
    interventionDate: str = Field(min_length=1)
    notes: str = ""
    total: float
    # Filled in when the document is first stored
    date: Optional[str] = Field(None, min_length=1)


class Quote(_Document):
    status: QuoteStatus = QuoteStatus.PENDING


class Invoice(_Document):
    status: InvoiceStatus = InvoiceStatus.UNPAID
