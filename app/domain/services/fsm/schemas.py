"""
Typed results for FSM GraphQL operations.

Connection fields come back as ``{"nodes": [...]}``; the models flatten
them to plain lists. Money stays in decimal dollars here and is converted
to integer cents by the engines via ``to_cents``.
"""
from datetime import datetime
from typing import Annotated, Any, TypeVar

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field
from pydantic.alias_generators import to_camel


def to_cents(amount: float | int | str | None) -> int:
    """Decimal dollars -> integer cents"""
    if amount in (None, ""):
        return 0
    return int(round(float(amount) * 100))


def _unwrap_nodes(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, dict):
        return value.get("nodes") or []
    return value


T = TypeVar("T")

# Connection field: accepts {"nodes": [...]}, a plain list or null
NodeList = Annotated[list[T], BeforeValidator(_unwrap_nodes)]


class FSMModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class Ref(FSMModel):
    id: str
    name: str | None = None


class LineItem(FSMModel):
    id: str | None = None
    name: str = ""
    description: str | None = None
    category: str | None = None
    quantity: float = 0
    unit_price: float = 0
    total: float | None = None


class Amounts(FSMModel):
    total: float = 0
    paid: float = 0
    outstanding: float | None = None
    subtotal: float | None = None
    deposit_amount: float | None = None


class CustomFieldValue(FSMModel):
    label: str = ""
    value: Any = None


class Property(FSMModel):
    id: str
    custom_fields: NodeList[CustomFieldValue] = Field(default_factory=list)

    def lot_size_sqft(self) -> int | None:
        """Lot size from a custom field labelled like "Lot Size (sqft)"."""
        for field in self.custom_fields:
            label = field.label.lower()
            if "lot" in label and "size" in label and field.value not in (None, ""):
                try:
                    return int(float(str(field.value).replace(",", "")))
                except ValueError:
                    return None
        return None


class JobLink(FSMModel):
    id: str


class ConvertedTo(FSMModel):
    job: JobLink | None = None


class Quote(FSMModel):
    id: str
    quote_number: str | int | None = None
    title: str | None = None
    quote_status: str = ""
    created_at: datetime | None = None
    client: Ref | None = None
    job: JobLink | None = None
    converted_to: ConvertedTo | None = None
    line_items: NodeList[LineItem] = Field(default_factory=list)
    amounts: Amounts = Field(default_factory=Amounts)

    @property
    def is_approved(self) -> bool:
        return self.quote_status.lower() in ("approved", "converted")


class JobType(FSMModel):
    name: str | None = None


class Job(FSMModel):
    id: str
    title: str | None = None
    job_number: str | int | None = None
    job_status: str | None = None
    created_at: datetime | None = None
    client: Ref | None = None
    job_property: Property | None = Field(default=None, alias="property")
    job_type: JobType | None = None
    quote: JobLink | None = None
    assigned_users: NodeList[Ref] = Field(default_factory=list)
    line_items: NodeList[LineItem] = Field(default_factory=list)
    amounts: Amounts = Field(default_factory=Amounts)

    @property
    def job_type_name(self) -> str:
        return self.job_type.name if self.job_type and self.job_type.name else "unknown"

    @property
    def service_type(self) -> str:
        """Job type name, else title, else first line item name, else "general"."""
        if self.job_type and self.job_type.name:
            return self.job_type.name
        if self.title:
            return self.title
        if self.line_items and self.line_items[0].name:
            return self.line_items[0].name
        return "general"


class ClientJob(FSMModel):
    id: str
    title: str | None = None
    created_at: datetime | None = None


class TimeEntry(FSMModel):
    id: str | None = None
    duration: float | None = None  # minutes


class Visit(FSMModel):
    id: str
    title: str | None = None
    status: str | None = None
    duration: float | None = None  # minutes
    completed_at: datetime | None = None
    job: JobLink | None = None
    time_entries: NodeList[TimeEntry] = Field(default_factory=list)

    @property
    def time_logged_mins(self) -> int:
        return int(round(sum(entry.duration or 0 for entry in self.time_entries)))


class Invoice(FSMModel):
    id: str
    invoice_number: str | int | None = None
    subject: str | None = None
    payment_status: str | None = None
    amounts: Amounts = Field(default_factory=Amounts)
    job: JobLink | None = None
    client: Ref | None = None


class InvoiceLink(FSMModel):
    id: str


class Payment(FSMModel):
    id: str
    amount: float = 0
    payment_method: str | None = None
    note: str | None = None
    payment_date: datetime | None = None
    invoice: InvoiceLink | None = None

    @property
    def is_deposit(self) -> bool:
        text = f"{self.note or ''} {self.payment_method or ''}".lower()
        return "deposit" in text


class CustomFieldConfiguration(FSMModel):
    id: str
    label: str
    type: str | None = None
    applicable_to: str | None = None


class UserError(FSMModel):
    message: str
    path: list[str] | None = None


class MutationResult(FSMModel):
    """Result of a mutation: the id of the touched object plus any user errors"""
    object_id: str | None = None
    user_errors: list[UserError] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.user_errors

    @property
    def error_messages(self) -> list[str]:
        return [e.message for e in self.user_errors]
