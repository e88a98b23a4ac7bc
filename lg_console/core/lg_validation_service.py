# lg_console/core/lg_validation_service.py
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, Optional

from dateutil.relativedelta import relativedelta

from lg_console.constants import (
    ActionKind,
    LiquidationType,
    MIN_REASON_LENGTH,
    MAX_REPLY_DETAILS_LENGTH,
    MAX_PAYMENT_REFERENCE_LENGTH,
)
from lg_console.core.exceptions import ValidationError
from lg_console.schemas.all_schemas import (
    ActionPayload,
    LGRecordOut,
    LGInstructionOut,
    LGRecordExtend,
    LGRecordRelease,
    LGRecordLiquidation,
    LGRecordDecreaseAmount,
    LGRecordChangeOwner,
    LGRecordBulkChangeOwner,
    LGRecordAmend,
    LGActivateNonOperativeRequest,
    LGInstructionRecordDelivery,
    LGInstructionRecordBankReply,
    LGInstructionCancelRequest,
)

logger = logging.getLogger(__name__)

# Raw pre-check messages translated to what the user sees next to each field
ERROR_MAPPING = {
    "reason": {
        "Missing or empty field.": "Please provide a reason for this action.",
        "Too short.": f"Reason must be at least {MIN_REASON_LENGTH} characters long.",
    },
    "new_expiry_date": {
        "Must be after current expiry date.": "The new expiry date must be after the LG's current expiry date.",
    },
    "new_amount": {
        "Missing or empty field.": "New amount is required for a partial liquidation.",
        "Must be positive.": "New amount must be greater than 0.",
        "Exceeds current amount.": "New amount cannot be greater than the current LG amount.",
    },
    "decrease_amount": {
        "Must be positive.": "Decrease amount must be greater than 0.",
        "Must be less than current amount.": "Decrease amount must be less than the current LG amount.",
    },
    "new_internal_owner_contact_id": {
        "Missing owner.": "Select an existing owner or provide the details of a new owner.",
        "Both provided.": "Provide either an existing owner or new owner details, not both.",
        "Same as current owner.": "The selected contact is already the owner of this LG.",
    },
    "old_internal_owner_contact_id": {
        "Same as new owner.": "The new owner must be different from the current owner.",
    },
    "amendment_details": {
        "Missing or empty field.": "Provide at least one field to amend.",
        "Not amendable.": "The identifiers, status and instructions of an LG cannot be amended.",
    },
    "payment_date": {
        "Cannot be in the future.": "Payment date cannot be in the future.",
    },
    "payment_reference": {
        "Missing or empty field.": "Payment reference is required.",
        "Too long.": f"Payment reference cannot exceed {MAX_PAYMENT_REFERENCE_LENGTH} characters.",
    },
    "payment_method": {
        "Missing or empty field.": "Payment method is required.",
    },
    "delivery_date": {
        "Cannot be in the future.": "Delivery date cannot be in the future.",
        "Before instruction date.": "Delivery date cannot be before the instruction was issued.",
    },
    "bank_reply_date": {
        "Cannot be in the future.": "Bank reply date cannot be in the future.",
        "Before instruction date.": "Bank reply date cannot be before the instruction was issued.",
    },
    "reply_details": {
        "Too long.": f"Reply details cannot exceed {MAX_REPLY_DETAILS_LENGTH} characters.",
    },
    "declaration_confirmed": {
        "Not confirmed.": "Declaration must be confirmed to proceed with cancellation.",
    },
}


# Fields the authority owns; an amendment letter never changes them
NON_AMENDABLE_FIELDS = frozenset({"id", "lg_number", "lg_status", "lg_status_id", "instructions", "customer_id"})


def _as_date(value) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    return value


class LGActionValidationService:
    def __init__(self, today_provider=date.today):
        self._today = today_provider

    def _get_enhanced_error(self, field: str, message: str) -> str:
        """Translates a raw validation message into a user-friendly one."""
        return ERROR_MAPPING.get(field, {}).get(message, message)

    def resolve_new_expiry_date(self, lg_record: LGRecordOut, payload: LGRecordExtend) -> date:
        """The expiry date an Extend request will ask for, resolving month-based extensions."""
        if payload.new_expiry_date is not None:
            return payload.new_expiry_date
        return _as_date(lg_record.expiry_date) + relativedelta(months=payload.extension_months)

    def _check_reason(self, reason: Optional[str], raw_errors: Dict[str, str], min_length: int = MIN_REASON_LENGTH) -> None:
        text = (reason or "").strip()
        if not text:
            raw_errors["reason"] = "Missing or empty field."
        elif len(text) < min_length:
            raw_errors["reason"] = "Too short."

    def _check_new_owner(self, payload, raw_errors: Dict[str, str]) -> None:
        has_id = payload.new_internal_owner_contact_id is not None
        has_details = payload.new_internal_owner_contact_details is not None
        if not has_id and not has_details:
            raw_errors["new_internal_owner_contact_id"] = "Missing owner."
        elif has_id and has_details:
            raw_errors["new_internal_owner_contact_id"] = "Both provided."

    def validate_action_payload(
        self,
        action: ActionKind,
        payload: ActionPayload,
        lg_record: Optional[LGRecordOut] = None,
        instruction: Optional[LGInstructionOut] = None,
    ) -> Dict[str, str]:
        """
        Runs the local pre-checks for an action payload against the target it will be applied to.
        Returns a dictionary of user-friendly validation errors, empty when the payload is acceptable.
        """
        raw_errors: Dict[str, str] = {}
        today = self._today()

        if action == ActionKind.EXTEND and isinstance(payload, LGRecordExtend) and lg_record is not None:
            new_date = self.resolve_new_expiry_date(lg_record, payload)
            if new_date <= _as_date(lg_record.expiry_date):
                raw_errors["new_expiry_date"] = "Must be after current expiry date."

        elif action == ActionKind.RELEASE and isinstance(payload, LGRecordRelease):
            self._check_reason(payload.reason, raw_errors)

        elif action == ActionKind.LIQUIDATE and isinstance(payload, LGRecordLiquidation):
            self._check_reason(payload.reason, raw_errors)
            if payload.liquidation_type == LiquidationType.PARTIAL:
                if payload.new_amount is None:
                    raw_errors["new_amount"] = "Missing or empty field."
                elif payload.new_amount <= 0:
                    raw_errors["new_amount"] = "Must be positive."
                elif lg_record is not None and Decimal(payload.new_amount) > lg_record.lg_amount:
                    raw_errors["new_amount"] = "Exceeds current amount."

        elif action == ActionKind.DECREASE_AMOUNT and isinstance(payload, LGRecordDecreaseAmount):
            self._check_reason(payload.reason, raw_errors)
            if payload.decrease_amount <= 0:
                raw_errors["decrease_amount"] = "Must be positive."
            elif lg_record is not None and Decimal(payload.decrease_amount) >= lg_record.lg_amount:
                raw_errors["decrease_amount"] = "Must be less than current amount."

        elif action == ActionKind.CHANGE_OWNER and isinstance(payload, LGRecordChangeOwner):
            self._check_new_owner(payload, raw_errors)
            if (
                "new_internal_owner_contact_id" not in raw_errors
                and payload.new_internal_owner_contact_id is not None
                and lg_record is not None
                and lg_record.internal_owner_contact is not None
                and lg_record.internal_owner_contact.id == payload.new_internal_owner_contact_id
            ):
                raw_errors["new_internal_owner_contact_id"] = "Same as current owner."

        elif action == ActionKind.BULK_CHANGE_OWNER and isinstance(payload, LGRecordBulkChangeOwner):
            self._check_new_owner(payload, raw_errors)
            self._check_reason(payload.reason, raw_errors, min_length=1)
            if payload.new_internal_owner_contact_id == payload.old_internal_owner_contact_id:
                raw_errors["old_internal_owner_contact_id"] = "Same as new owner."

        elif action == ActionKind.AMEND and isinstance(payload, LGRecordAmend):
            # Blank form fields are dropped, as the amendment form does before sending
            changed = {key: value for key, value in payload.amendment_details.items() if value not in (None, "")}
            if not changed:
                raw_errors["amendment_details"] = "Missing or empty field."
            elif NON_AMENDABLE_FIELDS & set(changed):
                raw_errors["amendment_details"] = "Not amendable."

        elif action == ActionKind.ACTIVATE_NON_OPERATIVE and isinstance(payload, LGActivateNonOperativeRequest):
            if not payload.payment_method.strip():
                raw_errors["payment_method"] = "Missing or empty field."
            reference = payload.payment_reference.strip()
            if not reference:
                raw_errors["payment_reference"] = "Missing or empty field."
            elif len(reference) > MAX_PAYMENT_REFERENCE_LENGTH:
                raw_errors["payment_reference"] = "Too long."
            if payload.payment_date > today:
                raw_errors["payment_date"] = "Cannot be in the future."

        elif action == ActionKind.RECORD_DELIVERY and isinstance(payload, LGInstructionRecordDelivery):
            if payload.delivery_date > today:
                raw_errors["delivery_date"] = "Cannot be in the future."
            elif instruction is not None and instruction.instruction_date is not None \
                    and payload.delivery_date < _as_date(instruction.instruction_date):
                raw_errors["delivery_date"] = "Before instruction date."

        elif action == ActionKind.RECORD_BANK_REPLY and isinstance(payload, LGInstructionRecordBankReply):
            if payload.bank_reply_date > today:
                raw_errors["bank_reply_date"] = "Cannot be in the future."
            elif instruction is not None and instruction.instruction_date is not None \
                    and payload.bank_reply_date < _as_date(instruction.instruction_date):
                raw_errors["bank_reply_date"] = "Before instruction date."
            if payload.reply_details and len(payload.reply_details) > MAX_REPLY_DETAILS_LENGTH:
                raw_errors["reply_details"] = "Too long."

        elif action == ActionKind.CANCEL_INSTRUCTION and isinstance(payload, LGInstructionCancelRequest):
            self._check_reason(payload.reason, raw_errors, min_length=1)
            if not payload.declaration_confirmed:
                raw_errors["declaration_confirmed"] = "Not confirmed."

        # --- Final Error Generation ---
        if raw_errors:
            return {field: self._get_enhanced_error(field, message) for field, message in raw_errors.items()}
        return {}

    def ensure_valid(
        self,
        action: ActionKind,
        payload: ActionPayload,
        lg_record: Optional[LGRecordOut] = None,
        instruction: Optional[LGInstructionOut] = None,
    ) -> None:
        errors = self.validate_action_payload(action, payload, lg_record=lg_record, instruction=instruction)
        if errors:
            logger.info(f"Local pre-checks failed for {action.value}: {sorted(errors)}")
            raise ValidationError("Please correct the highlighted fields.", field_errors=errors)
