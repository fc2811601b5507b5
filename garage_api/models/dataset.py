from datetime import date
from enum import Enum
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, Field

from .client import Client
from .quote import Invoice, Quote

Record = Dict[str, Any]


def today() -> str:
    return date.today().isoformat()


class RecordKind(str, Enum):
    CLIENT = "client"
    QUOTE = "quote"
    INVOICE = "invoice"

    @property
    def collection(self) -> str:
        """Dataset key and MongoDB collection name for this kind."""
        return f"{self.value}s"

    @property
    def model(self) -> Type[BaseModel]:
        return _MODELS[self]

    @property
    def created_field(self) -> str:
        """Date field set once, when a record of this kind is first stored."""
        return "createdAt" if self is RecordKind.CLIENT else "date"


_MODELS = {
    RecordKind.CLIENT: Client,
    RecordKind.QUOTE: Quote,
    RecordKind.INVOICE: Invoice,
}


def keep_created(kind: RecordKind, record: Record, existing: Optional[Record] = None) -> Record:
    """
    Copy of ``record`` ready to replace ``existing``.

    A record sent without its creation date keeps the stored one, or gets
    today's date when nothing is stored under its id yet.
    """
    doc = dict(record)
    field = kind.created_field
    if doc.get(field) is None:
        doc[field] = (existing or {}).get(field) or today()
    return doc


class Dataset(BaseModel):
    clients: List[Record] = Field(default_factory=list)
    quotes: List[Record] = Field(default_factory=list)
    invoices: List[Record] = Field(default_factory=list)

    def records(self, kind: RecordKind) -> List[Record]:
        return getattr(self, kind.collection)

    def counts(self) -> Dict[str, int]:
        return {kind.collection: len(self.records(kind)) for kind in RecordKind}
