# lg_console/constants.py
import enum


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "active"
    GRACE = "grace"
    EXPIRED = "expired"


class LgStatusEnum(str, enum.Enum):
    # Names as seeded by the authority's lg_statuses table
    VALID = "Valid"
    ACTIVE = "Active"
    EXPIRED = "Expired"
    RELEASED = "Released"
    LIQUIDATED = "Liquidated"
    NON_OPERATIVE = "NonOperative"


class ActionKind(str, enum.Enum):
    EXTEND = "Extend"
    RELEASE = "Release"
    LIQUIDATE = "Liquidate"
    DECREASE_AMOUNT = "DecreaseAmount"
    CHANGE_OWNER = "ChangeOwner"
    TOGGLE_AUTO_RENEWAL = "ToggleAutoRenewal"
    AMEND = "Amend"
    ACTIVATE_NON_OPERATIVE = "ActivateNonOperative"
    RECORD_DELIVERY = "RecordDelivery"
    RECORD_BANK_REPLY = "RecordBankReply"
    SEND_REMINDER = "SendReminder"
    RUN_BULK_RENEWAL = "RunBulkRenewal"
    GENERATE_BULK_REMINDERS = "GenerateBulkReminders"
    BULK_CHANGE_OWNER = "BulkChangeOwner"
    CANCEL_INSTRUCTION = "CancelInstruction"


RECORD_ACTIONS = frozenset({
    ActionKind.EXTEND,
    ActionKind.RELEASE,
    ActionKind.LIQUIDATE,
    ActionKind.DECREASE_AMOUNT,
    ActionKind.CHANGE_OWNER,
    ActionKind.TOGGLE_AUTO_RENEWAL,
    ActionKind.AMEND,
    ActionKind.ACTIVATE_NON_OPERATIVE,
})

INSTRUCTION_ACTIONS = frozenset({
    ActionKind.RECORD_DELIVERY,
    ActionKind.RECORD_BANK_REPLY,
    ActionKind.SEND_REMINDER,
    ActionKind.CANCEL_INSTRUCTION,
})

COLLECTION_ACTIONS = frozenset({
    ActionKind.RUN_BULK_RENEWAL,
    ActionKind.GENERATE_BULK_REMINDERS,
    ActionKind.BULK_CHANGE_OWNER,
})


class LiquidationType(str, enum.Enum):
    FULL = "full"
    PARTIAL = "partial"


class InternalOwnerChangeScope(str, enum.Enum):
    SINGLE_LG = "single_lg"
    ALL_BY_OLD_OWNER = "all_by_old_owner"


# --- LG types and operational states that gate activation ---
LG_TYPE_ADVANCE_PAYMENT_ID = 3
LG_TYPE_ADVANCE_PAYMENT_NAME = "Advance Payment LG"
LG_OPERATIONAL_STATUS_NON_OPERATIVE_ID = 2
# Seeded as "None Operative" in some deployments
LG_OPERATIONAL_STATUS_NON_OPERATIVE_NAMES = frozenset({"Non-Operative", "None Operative"})


# --- Instruction types and statuses as issued by the authority ---
INSTRUCTION_TYPE_EXTENSION = "LG_EXTENSION"
INSTRUCTION_TYPE_LIQUIDATION = "LG_LIQUIDATION"
INSTRUCTION_TYPE_RELEASE = "LG_RELEASE"
INSTRUCTION_TYPE_DECREASE_AMOUNT = "LG_DECREASE_AMOUNT"
INSTRUCTION_TYPE_ACTIVATE_NON_OPERATIVE = "LG_ACTIVATE_NON_OPERATIVE"
INSTRUCTION_TYPE_REMINDER_TO_BANKS = "LG_REMINDER_TO_BANKS"

ACTIONABLE_INSTRUCTION_TYPES = frozenset({
    INSTRUCTION_TYPE_EXTENSION,
    INSTRUCTION_TYPE_LIQUIDATION,
    INSTRUCTION_TYPE_RELEASE,
    INSTRUCTION_TYPE_DECREASE_AMOUNT,
    INSTRUCTION_TYPE_ACTIVATE_NON_OPERATIVE,
})

INSTRUCTION_STATUS_ISSUED = "Instruction Issued"
INSTRUCTION_STATUS_REMINDER_ISSUED = "Reminder Issued"
CANCELLABLE_INSTRUCTION_STATUSES = frozenset({
    INSTRUCTION_STATUS_ISSUED,
    INSTRUCTION_STATUS_REMINDER_ISSUED,
})

DOCUMENT_TYPE_DELIVERY_PROOF = "DELIVERY_PROOF"
DOCUMENT_TYPE_BANK_REPLY = "BANK_REPLY"

# --- Local pre-check limits ---
MIN_REASON_LENGTH = 10
MAX_REPLY_DETAILS_LENGTH = 500
DEFAULT_EXTENSION_MONTHS = 12
# An expired LG can still be amended for this many days after its expiry date
AMEND_AFTER_EXPIRY_DAYS = 35
MAX_PAYMENT_REFERENCE_LENGTH = 100

# --- User-facing messages ---
GRACE_PERIOD_REFUSAL_MESSAGE = "This action is disabled during your subscription's grace period."
READ_ONLY_VIEW_REFUSAL_MESSAGE = "This view is read-only. Actions are not available."
SUBMISSION_IN_PROGRESS_MESSAGE = "This action is already being submitted. Please wait."
GENERIC_FAILURE_MESSAGE = "An unexpected error occurred."
MISSING_LETTER_MESSAGE = "No generated letter found for this LG, or instruction ID is missing."

# Wording used when reporting each action: (noun for approval notices, past tense, infinitive)
ACTION_WORDING = {
    ActionKind.EXTEND: ("Extension", "extended", "extend LG"),
    ActionKind.RELEASE: ("Release", "released", "release LG"),
    ActionKind.LIQUIDATE: ("Liquidation", "liquidated", "liquidate LG"),
    ActionKind.DECREASE_AMOUNT: ("Amount Decrease", "amount decreased", "decrease LG amount"),
    ActionKind.CHANGE_OWNER: ("Owner change", "owner changed", "change LG owner"),
    ActionKind.TOGGLE_AUTO_RENEWAL: ("Auto-renewal change", "auto-renewal updated", "toggle auto-renewal"),
    ActionKind.AMEND: ("Amendment", "amended", "amend LG"),
    ActionKind.ACTIVATE_NON_OPERATIVE: ("Activation", "activated", "activate LG"),
    ActionKind.RECORD_DELIVERY: ("Delivery", "delivery recorded", "record delivery"),
    ActionKind.RECORD_BANK_REPLY: ("Bank reply", "bank reply recorded", "record bank reply"),
    ActionKind.SEND_REMINDER: ("Reminder", "reminder generated", "send reminder"),
    ActionKind.CANCEL_INSTRUCTION: ("Instruction cancellation", "last instruction cancelled", "cancel instruction"),
    ActionKind.RUN_BULK_RENEWAL: ("Bulk renewal", "renewed", "run auto-renewal"),
    ActionKind.GENERATE_BULK_REMINDERS: ("Bulk reminders", "reminders generated", "generate bank reminders"),
    ActionKind.BULK_CHANGE_OWNER: ("Bulk LG Owner change", "owners changed", "change LG owners"),
}
