# lg_console/schemas/all_schemas.py
from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator
from datetime import datetime, date, timezone
from typing import Optional, List, Dict, Any, Literal, Union
from decimal import Decimal
import logging

logger = logging.getLogger(__name__) # Get logger instance for the module

from lg_console.constants import ActionKind, LiquidationType, SubscriptionStatus


def _blank_to_none(value: Any) -> Any:
    # The authority sometimes sends "" for unset dates
    if isinstance(value, str) and value.strip() == "":
        return None
    return value


# --- Records as served by the authority ---

class LgStatusOut(BaseModel):
    id: Optional[int] = None
    name: str

    class Config:
        from_attributes = True
        extra = "allow"


class CurrencyOut(BaseModel):
    id: Optional[int] = None
    iso_code: Optional[str] = None
    name: Optional[str] = None

    class Config:
        from_attributes = True
        extra = "allow"


class LgTypeOut(BaseModel):
    id: Optional[int] = None
    name: Optional[str] = None

    class Config:
        from_attributes = True
        extra = "allow"


class LgOperationalStatusOut(BaseModel):
    id: Optional[int] = None
    name: Optional[str] = None

    class Config:
        from_attributes = True
        extra = "allow"


class InternalOwnerContactOut(BaseModel):
    id: int
    email: Optional[str] = None
    phone_number: Optional[str] = None
    internal_id: Optional[str] = None
    manager_email: Optional[str] = None

    class Config:
        from_attributes = True
        extra = "allow"


class LGInstructionOut(BaseModel):
    id: int
    lg_record_id: Optional[int] = None
    serial_number: Optional[str] = None
    instruction_type: str = Field(..., description="Type of instruction (e.g., 'LG_EXTENSION', 'LG_REMINDER_TO_BANKS')")
    status: Optional[str] = Field(None, description="Current status (e.g., 'Instruction Issued', 'Reminder Issued', 'Canceled')")
    instruction_date: Optional[datetime] = None
    created_at: datetime
    delivery_date: Optional[datetime] = None
    bank_reply_date: Optional[datetime] = None
    bank_reply_details: Optional[str] = None
    documents: List[Dict[str, Any]] = []

    class Config:
        from_attributes = True
        extra = "allow"

    @field_validator("instruction_date", "delivery_date", "bank_reply_date", mode="before")
    @classmethod
    def blank_dates_are_unset(cls, value):
        return _blank_to_none(value)


class LGRecordOut(BaseModel):
    id: int
    lg_number: str
    lg_amount: Decimal
    lg_currency: Optional[CurrencyOut] = None
    lg_type: Optional[LgTypeOut] = None
    lg_status: LgStatusOut
    lg_operational_status: Optional[LgOperationalStatusOut] = None
    expiry_date: datetime
    auto_renewal: bool = False
    lg_period_months: Optional[int] = None
    internal_owner_contact: Optional[InternalOwnerContactOut] = None
    instructions: List[LGInstructionOut] = []

    class Config:
        from_attributes = True
        # Keep every field the authority sends so a patched record loses nothing
        extra = "allow"

    @property
    def status_name(self) -> str:
        return self.lg_status.name

    def latest_instruction(self) -> Optional[LGInstructionOut]:
        """The instruction with the greatest (created_at, id); None when there are none."""
        if not self.instructions:
            return None
        return max(self.instructions, key=lambda i: (i.created_at, i.id))

    def find_instruction(self, instruction_id: int) -> Optional[LGInstructionOut]:
        for instruction in self.instructions:
            if instruction.id == instruction_id:
                return instruction
        return None


# --- Action payloads ---

class DocumentUpload(BaseModel):
    """A file forwarded to the authority as a multipart part."""
    file_name: str
    content: bytes
    mime_type: str = "application/octet-stream"


class LGRecordExtend(BaseModel):
    new_expiry_date: Optional[date] = Field(None, description="The new expiry date (YYYY-MM-DD).")
    # NEW: alternative to an explicit date, added to the current expiry date
    extension_months: Optional[int] = Field(None, ge=1, description="Number of months to extend by.")
    notes: Optional[str] = Field(None, description="Notes for the extension instruction.")

    @model_validator(mode='after')
    def validate_one_target_date(self):
        if (self.new_expiry_date is None) == (self.extension_months is None):
            raise ValueError("Provide exactly one of 'new_expiry_date' or 'extension_months'.")
        return self


class LGRecordRelease(BaseModel):
    reason: str = Field(..., description="Reason for releasing the LG (e.g., contract fulfilled).")
    notes: Optional[str] = Field(None, description="Additional notes for the action.")
    total_documents_count: Optional[int] = Field(None, ge=0, description="Number of documents attached to the release.")
    pending_replies_count: Optional[int] = Field(None, ge=0, description="Number of bank replies still outstanding.")


class LGRecordLiquidation(BaseModel):
    liquidation_type: LiquidationType = Field(..., description="Type of liquidation: 'full' or 'partial'.")
    new_amount: Optional[Decimal] = Field(None, description="The new amount of the LG if partial liquidation. Required for partial, ignored for full.")
    reason: str = Field(..., description="Reason for liquidating the LG.")


class LGRecordDecreaseAmount(BaseModel):
    decrease_amount: Decimal = Field(..., gt=0, description="The amount to decrease the LG by.")
    reason: str = Field(..., description="Reason for decreasing the LG amount.")
    internal_supporting_document_file: Optional[DocumentUpload] = Field(None, description="Optional internal supporting document.")


class InternalOwnerContactCreate(BaseModel):
    email: EmailStr = Field(..., description="Email of the internal owner contact person")
    phone_number: str = Field(..., description="Phone number of the internal owner")
    internal_id: Optional[str] = Field(None, max_length=10, description="Optional internal ID for the owner")
    manager_email: EmailStr = Field(..., description="Manager's email of the internal owner")


class LGRecordChangeOwner(BaseModel):
    new_internal_owner_contact_id: Optional[int] = Field(None, description="ID of an *existing* internal owner contact to assign to.")
    new_internal_owner_contact_details: Optional[InternalOwnerContactCreate] = Field(None, description="Details to create a *new* internal owner contact and assign to.")
    reason: Optional[str] = Field(None, description="Reason for changing the LG owner.")


class LGRecordBulkChangeOwner(BaseModel):
    old_internal_owner_contact_id: int = Field(..., description="ID of the current internal owner contact whose LGs will be reassigned.")
    new_internal_owner_contact_id: Optional[int] = Field(None, description="ID of an *existing* internal owner contact to assign to.")
    new_internal_owner_contact_details: Optional[InternalOwnerContactCreate] = Field(None, description="Details to create a *new* internal owner contact and assign to.")
    reason: Optional[str] = Field(None, description="Reason for changing the LG owners.")


class LGRecordToggleAutoRenewalRequest(BaseModel):
    auto_renewal: bool = Field(..., description="The new auto_renewal status (True/False).")
    reason: Optional[str] = Field(None, description="Reason for toggling auto-renewal.")


class LGRecordAmend(BaseModel):
    amendment_details: Dict[str, Any] = Field(
        ...,
        description="LG record fields to be amended and their new values. Example: {'expiry_date': '2025-12-31', 'lg_amount': 50000.0}",
    )
    reason: Optional[str] = Field(None, description="Reason for amending the LG.")
    amendment_letter_file: DocumentUpload = Field(..., description="Scanned bank amendment letter (PDF or image).")


class LGActivateNonOperativeRequest(BaseModel):
    payment_method: str = Field(..., description="Payment method used (e.g., 'Wire', 'Check')")
    currency_id: int = Field(..., description="ID of the Currency for the payment.")
    amount: Decimal = Field(..., gt=0, description="The payment amount.")
    payment_reference: str = Field(..., description="Wire reference or check number.")
    issuing_bank_id: int = Field(..., description="ID of the Issuing Bank related to the payment.")
    payment_date: date = Field(..., description="Date the payment was made.")
    notes: Optional[str] = Field(None, description="Additional notes for the action.")
    internal_supporting_document_file: Optional[DocumentUpload] = Field(None, description="Optional internal supporting document.")


class LGInstructionRecordDelivery(BaseModel):
    delivery_date: date = Field(..., description="The date the instruction was physically delivered to the bank.")
    delivery_document_file: Optional[DocumentUpload] = Field(None, description="Optional document proving delivery.")


class LGInstructionRecordBankReply(BaseModel):
    bank_reply_date: date = Field(..., description="The date the bank's reply was received.")
    reply_details: Optional[str] = Field(None, description="Details or notes from the bank's reply.")
    bank_reply_document_file: Optional[DocumentUpload] = Field(None, description="Optional document proving the bank's reply.")


class LGInstructionCancelRequest(BaseModel):
    reason: str = Field(..., description="Reason for canceling the instruction.")
    declaration_confirmed: bool = Field(..., description="Confirmation that the user accepts full responsibility for the cancellation.")


ActionPayload = Union[
    LGRecordExtend,
    LGRecordRelease,
    LGRecordLiquidation,
    LGRecordDecreaseAmount,
    LGRecordChangeOwner,
    LGRecordToggleAutoRenewalRequest,
    LGRecordAmend,
    LGActivateNonOperativeRequest,
    LGRecordBulkChangeOwner,
    LGInstructionRecordDelivery,
    LGInstructionRecordBankReply,
    LGInstructionCancelRequest,
]


# --- Normalized action outcomes ---

class Applied(BaseModel):
    """The mutation took effect. Carries the authority's copy of the record."""
    kind: Literal["applied"] = "applied"
    lg_record: LGRecordOut
    latest_instruction_id: Optional[int] = None
    message: Optional[str] = None


class Pending(BaseModel):
    """The mutation was queued for maker-checker approval."""
    kind: Literal["pending"] = "pending"
    approval_request_id: int
    provisional_record: Optional[LGRecordOut] = None
    message: Optional[str] = None


ActionOutcome = Union[Applied, Pending]


class OwnerChangeSummaryOut(BaseModel):
    """Direct owner changes answer with a summary instead of the updated record."""
    message: str
    affected_lgs_count: int = 0
    affected_lg_numbers: List[str] = []


OwnerChangeOutcome = Union[Applied, Pending, OwnerChangeSummaryOut]


class InstructionActionResult(BaseModel):
    """Result of delivery, reply, reminder and cancel calls on one instruction."""
    action: ActionKind
    instruction_id: int
    lg_record_id: Optional[int] = None
    message: Optional[str] = None
    new_instruction_id: Optional[int] = None
    # Reminder letters may come back as a ready-to-print HTML page
    html_document: Optional[str] = None
    outcome: Optional[Union[Applied, Pending]] = None


class AutoRenewalRunSummaryOut(BaseModel):
    renewed_count: int
    message: str
    combined_pdf_base64: Optional[str] = None


class BulkRemindersOut(BaseModel):
    message: str
    combined_pdf_base64: Optional[str] = None


# --- Console view state ---

class PresentedDocument(BaseModel):
    kind: Literal["letter_url", "inline_pdf", "inline_html"]
    title: str
    url: Optional[str] = None
    content_base64: Optional[str] = None
    html: Optional[str] = None
    instruction_id: Optional[int] = None


class NotificationOut(BaseModel):
    level: Literal["success", "info", "warning", "error"]
    message: str
    field_errors: Dict[str, str] = {}
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ActionReport(BaseModel):
    action: ActionKind
    status: Literal["applied", "pending", "refused", "invalid", "failed"]
    message: str
    target_id: Optional[int] = None
    lg_record: Optional[LGRecordOut] = None
    approval_request_id: Optional[int] = None
    latest_instruction_id: Optional[int] = None
    field_errors: Dict[str, str] = {}
    affected_lg_numbers: List[str] = []
    documents: List[PresentedDocument] = []
    side_effect_error: Optional[str] = None
    refresh_error: Optional[str] = None


class RecordCollectionOut(BaseModel):
    records: List[LGRecordOut] = []
    is_initial_loading: bool = False
    is_refreshing: bool = False
    load_error: Optional[str] = None


class ActionCenterOut(BaseModel):
    lg_for_renewal: List[LGRecordOut] = []
    instructions_undelivered: List[LGInstructionOut] = []
    instructions_awaiting_reply: List[LGInstructionOut] = []
    approved_requests_pending_print: List[Dict[str, Any]] = []
    is_initial_loading: bool = False
    is_refreshing: bool = False
    load_error: Optional[str] = None


class AvailableActionsOut(BaseModel):
    lg_record_id: int
    lg_status: str
    subscription_status: SubscriptionStatus
    can_mutate: bool
    actions: List[ActionKind] = []
    instruction_actions: Dict[int, List[ActionKind]] = {}
