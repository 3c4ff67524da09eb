"""
Pydantic schemas for request/response validation.
All API endpoints should use these schemas instead of raw dicts.
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, List

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


RECEIPT_STATUSES = ["pending", "completed", "auto_completed", "no_receipt_required", "cant_find"]
RULE_DIRECTIONS = ["in", "out", "both"]
CLASSIFICATION_SOURCES = ["manual", "rule", "ai"]

EXPENSE_CATEGORIES = [
    "Total Staff",
    "Business Rate",
    "Water Rates",
    "Heat/Light/Power",
    "Premises Repairs/Maintenance",
    "Equipment Repairs/Maintenance",
    "Gardening Expenses",
    "Buildings Insurance",
    "Maintenance and Service Plan Charges",
    "Licensing",
    "Tenant Insurance",
    "Entertainment",
    "Sky / PRS / Vidimix",
    "Marketing/Promotion/Advertising",
    "Print/Post Stationary",
    "Telephone",
    "Travel/Car",
    "Waste Disposal/Cleaning/Hygiene",
    "Third Party Booking Fee",
    "Accountant/StockTaker/Professional Fees",
    "Bank Charges/Credit Card Commission",
    "Equipment Hire",
    "Sundries/Consumables",
    "Drinks Gas",
]

VENDOR_NAME_MAX_LENGTH = 120


def match_expense_category(value: Optional[str]) -> Optional[str]:
    """Return the canonical spelling of an expense category, or None"""
    if value is None:
        return None
    wanted = value.strip().lower()
    for category in EXPENSE_CATEGORIES:
        if category.lower() == wanted:
            return category
    return None


def normalize_vendor_name(value: Optional[str]) -> Optional[str]:
    """Trim and cap a vendor name; empty becomes None"""
    if value is None:
        return None
    cleaned = " ".join(value.split())[:VENDOR_NAME_MAX_LENGTH].strip()
    return cleaned or None


# =============================================================================
# Statement Parsing
# =============================================================================

class ParsedTransactionRow(BaseModel):
    """A normalized statement row ready for import"""
    transaction_date: date
    details: str
    transaction_type: Optional[str] = None
    amount_in: Optional[Decimal] = None
    amount_out: Optional[Decimal] = None
    balance: Optional[Decimal] = None
    dedupe_hash: str


# =============================================================================
# Transaction Schemas
# =============================================================================

class ReceiptFileResponse(BaseModel):
    """Schema for receipt file response"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    transaction_id: int
    storage_path: str
    file_name: str
    mime_type: Optional[str] = None
    file_size_bytes: Optional[int] = None
    uploaded_by: Optional[str] = None
    uploaded_at: Optional[datetime] = None


class TransactionResponse(BaseModel):
    """Schema for receipt transaction response"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    batch_id: Optional[int] = None
    transaction_date: date
    details: str
    transaction_type: Optional[str] = None
    amount_in: Optional[Decimal] = None
    amount_out: Optional[Decimal] = None
    balance: Optional[Decimal] = None
    status: str
    receipt_required: bool
    vendor_name: Optional[str] = None
    vendor_source: Optional[str] = None
    vendor_rule_id: Optional[int] = None
    expense_category: Optional[str] = None
    expense_category_source: Optional[str] = None
    expense_rule_id: Optional[int] = None
    marked_by: Optional[str] = None
    marked_by_email: Optional[str] = None
    marked_by_name: Optional[str] = None
    marked_at: Optional[datetime] = None
    marked_method: Optional[str] = None
    rule_applied_id: Optional[int] = None
    notes: Optional[str] = None
    ai_confidence: Optional[int] = None
    ai_suggested_keywords: Optional[str] = None
    files: List[ReceiptFileResponse] = []


class TransactionLogResponse(BaseModel):
    """Schema for a transaction audit trail entry"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    transaction_id: int
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    action_type: str
    note: Optional[str] = None
    performed_by: Optional[str] = None
    rule_id: Optional[int] = None
    performed_at: Optional[datetime] = None


class BatchResponse(BaseModel):
    """Schema for statement batch response"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    original_filename: str
    source_hash: Optional[str] = None
    row_count: int
    uploaded_by: Optional[str] = None
    uploaded_at: Optional[datetime] = None


class MarkTransactionRequest(BaseModel):
    """Schema for manually marking a transaction"""
    model_config = ConfigDict(populate_by_name=True)

    status: str
    note: Optional[str] = Field(None, max_length=2000)
    receipt_required: Optional[bool] = Field(None, alias="receiptRequired")

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        if v not in RECEIPT_STATUSES:
            raise ValueError(f"Status must be one of: {', '.join(RECEIPT_STATUSES)}")
        return v


class ClassificationRequest(BaseModel):
    """Schema for a manual vendor/expense edit. Empty strings clear a field."""
    model_config = ConfigDict(populate_by_name=True)

    vendor_name: Optional[str] = Field(None, alias="vendorName")
    expense_category: Optional[str] = Field(None, alias="expenseCategory")


# =============================================================================
# Rule Schemas
# =============================================================================

class RuleInput(BaseModel):
    """Schema for creating or updating a receipt rule"""
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = Field(None, max_length=500)
    match_description: Optional[str] = Field(None, max_length=300)
    match_transaction_type: Optional[str] = Field(None, max_length=50)
    match_direction: str = "both"
    match_min_amount: Optional[Decimal] = Field(None, ge=0)
    match_max_amount: Optional[Decimal] = Field(None, ge=0)
    auto_status: str = "no_receipt_required"
    set_vendor_name: Optional[str] = None
    set_expense_category: Optional[str] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Rule name is required")
        return v

    @field_validator("description", "match_description", "match_transaction_type", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v

    @field_validator("match_min_amount", "match_max_amount", mode="before")
    @classmethod
    def blank_amount_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("match_direction")
    @classmethod
    def validate_direction(cls, v: str) -> str:
        if v not in RULE_DIRECTIONS:
            raise ValueError("Direction must be in, out or both")
        return v

    @field_validator("auto_status")
    @classmethod
    def validate_auto_status(cls, v: str) -> str:
        if v not in RECEIPT_STATUSES:
            raise ValueError(f"Auto status must be one of: {', '.join(RECEIPT_STATUSES)}")
        return v

    @field_validator("set_vendor_name", mode="before")
    @classmethod
    def clean_vendor(cls, v):
        return normalize_vendor_name(v) if isinstance(v, str) else v

    @field_validator("set_expense_category", mode="before")
    @classmethod
    def clean_category(cls, v):
        if isinstance(v, str):
            if not v.strip():
                return None
            matched = match_expense_category(v)
            if matched is None:
                raise ValueError("Expense category is not recognised")
            return matched
        return v

    @model_validator(mode="after")
    def check_rule_shape(self):
        if self.set_expense_category and self.match_direction != "out":
            raise ValueError("Expense auto-tagging rules must use outgoing direction")
        if (
            self.match_min_amount is not None
            and self.match_max_amount is not None
            and self.match_min_amount > self.match_max_amount
        ):
            raise ValueError("Minimum amount cannot be greater than maximum amount")
        return self


class RuleResponse(BaseModel):
    """Schema for rule response"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str] = None
    match_description: Optional[str] = None
    match_transaction_type: Optional[str] = None
    match_direction: str
    match_min_amount: Optional[Decimal] = None
    match_max_amount: Optional[Decimal] = None
    auto_status: str
    set_vendor_name: Optional[str] = None
    set_expense_category: Optional[str] = None
    is_active: bool
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class RetroRunRequest(BaseModel):
    """Schema for a looped retroactive run"""
    scope: str = "pending"

    @field_validator("scope")
    @classmethod
    def validate_scope(cls, v: str) -> str:
        if v not in ("pending", "all"):
            raise ValueError("Scope must be pending or all")
        return v


class RetroStepRequest(RetroRunRequest):
    """Schema for one chunk of a client-driven retroactive run"""
    model_config = ConfigDict(populate_by_name=True)

    offset: int = Field(0, ge=0)
    chunk_size: Optional[int] = Field(None, ge=1, le=500, alias="chunkSize")
    cutoff_id: Optional[int] = Field(None, ge=0, alias="cutoffId")


class RetroFinalizeRequest(RetroRunRequest):
    """Schema for the totals reported when a client-driven run completes"""
    reviewed: int = Field(0, ge=0)
    matched: int = Field(0, ge=0)
    status_auto_updated: int = Field(0, ge=0, alias="statusAutoUpdated")
    classification_updated: int = Field(0, ge=0, alias="classificationUpdated")
    vendor_intended: int = Field(0, ge=0, alias="vendorIntended")
    expense_intended: int = Field(0, ge=0, alias="expenseIntended")

    model_config = ConfigDict(populate_by_name=True)


# =============================================================================
# Bulk Classification Schemas
# =============================================================================

class GroupApplyRequest(BaseModel):
    """Schema for applying one classification to every row sharing a description"""
    model_config = ConfigDict(populate_by_name=True)

    details: str = Field(..., min_length=1)
    vendor_name: Optional[str] = Field(None, alias="vendorName")
    expense_category: Optional[str] = Field(None, alias="expenseCategory")
    statuses: Optional[List[str]] = None

    @field_validator("statuses")
    @classmethod
    def validate_statuses(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is None:
            return v
        invalid = [s for s in v if s not in RECEIPT_STATUSES]
        if invalid:
            raise ValueError(f"Unknown statuses: {', '.join(invalid)}")
        return v


class GroupRuleRequest(BaseModel):
    """Schema for turning a reviewed group into a rule"""
    model_config = ConfigDict(populate_by_name=True)

    details: str = Field(..., min_length=1)
    name: Optional[str] = None
    match_description: Optional[str] = Field(None, alias="matchDescription")
    vendor_name: Optional[str] = Field(None, alias="vendorName")
    expense_category: Optional[str] = Field(None, alias="expenseCategory")
    match_direction: Optional[str] = Field(None, alias="matchDirection")
    auto_status: str = Field("no_receipt_required", alias="autoStatus")
