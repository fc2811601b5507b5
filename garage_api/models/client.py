from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Vehicle(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    id: int
    brand: str = Field(min_length=1)
    model: str = Field(min_length=1)
    year: str = Field(min_length=1)
    plate: str = Field(min_length=1)
    vin: str = Field(min_length=1)


class Client(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: int
    firstName: str = Field(min_length=1)
    lastName: str = Field(min_length=1)
    email: str = Field(min_length=1)
    phone: str = Field(min_length=1)
    address: str = Field(min_length=1)
    vehicles: List[Vehicle] = Field(default_factory=list)
    # Filled in when the client is first stored
    createdAt: Optional[str] = Field(None, min_length=1)
