# lg_console/core/action_catalog.py
import logging
from datetime import date, datetime, timedelta
from typing import Callable, FrozenSet, Optional, Set, Union

from lg_console.constants import (
    ActionKind,
    LgStatusEnum,
    ACTIONABLE_INSTRUCTION_TYPES,
    AMEND_AFTER_EXPIRY_DAYS,
    CANCELLABLE_INSTRUCTION_STATUSES,
    INSTRUCTION_TYPE_REMINDER_TO_BANKS,
    LG_OPERATIONAL_STATUS_NON_OPERATIVE_ID,
    LG_OPERATIONAL_STATUS_NON_OPERATIVE_NAMES,
    LG_TYPE_ADVANCE_PAYMENT_ID,
    LG_TYPE_ADVANCE_PAYMENT_NAME,
)
from lg_console.schemas.all_schemas import LGRecordOut, LGInstructionOut

logger = logging.getLogger(__name__)

# ChangeOwner is allowed in every lifecycle state; it is only gated by the subscription.
STATUS_INDEPENDENT_ACTIONS: FrozenSet[ActionKind] = frozenset({ActionKind.CHANGE_OWNER})

ACTIONS_BY_STATUS = {
    LgStatusEnum.VALID: frozenset({
        ActionKind.EXTEND,
        ActionKind.RELEASE,
        ActionKind.LIQUIDATE,
        ActionKind.DECREASE_AMOUNT,
        ActionKind.TOGGLE_AUTO_RENEWAL,
        ActionKind.AMEND,
    }),
    LgStatusEnum.ACTIVE: frozenset({
        ActionKind.RELEASE,
        ActionKind.LIQUIDATE,
        ActionKind.DECREASE_AMOUNT,
    }),
    LgStatusEnum.NON_OPERATIVE: frozenset({ActionKind.ACTIVATE_NON_OPERATIVE}),
    LgStatusEnum.EXPIRED: frozenset(),
    LgStatusEnum.RELEASED: frozenset(),
    LgStatusEnum.LIQUIDATED: frozenset(),
}


def _squash(name: str) -> str:
    # "Non-Operative", "Non Operative" and "NonOperative" are the same state
    return "".join(ch for ch in name.lower() if ch.isalnum())


def _normalize_status(lg_status: Union[LgStatusEnum, str, None]) -> Optional[LgStatusEnum]:
    if isinstance(lg_status, LgStatusEnum):
        return lg_status
    if not lg_status:
        return None
    wanted = _squash(str(lg_status))
    for member in LgStatusEnum:
        if _squash(member.value) == wanted:
            return member
    return None


def available_actions(lg_status: Union[LgStatusEnum, str, None]) -> Set[ActionKind]:
    """Actions offered for an LG in the given lifecycle status."""
    status = _normalize_status(lg_status)
    if status is None:
        logger.debug(f"Unrecognised LG status '{lg_status}'; only status-independent actions are offered.")
        return set(STATUS_INDEPENDENT_ACTIONS)
    return set(ACTIONS_BY_STATUS[status] | STATUS_INDEPENDENT_ACTIONS)


def is_action_available(action: ActionKind, lg_status: Union[LgStatusEnum, str, None]) -> bool:
    return action in available_actions(lg_status)


def is_non_operative_advance_payment(lg_record: LGRecordOut) -> bool:
    lg_type, operational = lg_record.lg_type, lg_record.lg_operational_status
    if lg_type is None or operational is None:
        return False
    is_advance_payment = lg_type.id == LG_TYPE_ADVANCE_PAYMENT_ID or lg_type.name == LG_TYPE_ADVANCE_PAYMENT_NAME
    is_non_operative = operational.id == LG_OPERATIONAL_STATUS_NON_OPERATIVE_ID or (
        operational.name is not None
        and _squash(operational.name) in {_squash(name) for name in LG_OPERATIONAL_STATUS_NON_OPERATIVE_NAMES}
    )
    return is_advance_payment and is_non_operative


def available_record_actions(
    lg_record: LGRecordOut,
    today_provider: Callable[[], date] = date.today,
) -> Set[ActionKind]:
    """
    The status table applied to one record, plus the offers that depend on more than its status:
    an expired LG may still be amended shortly after expiry, and a Valid advance payment LG
    that is not yet operative may be activated.
    """
    actions = available_actions(lg_record.status_name)
    status = _normalize_status(lg_record.status_name)

    if status == LgStatusEnum.EXPIRED:
        expiry = lg_record.expiry_date.date() if isinstance(lg_record.expiry_date, datetime) else lg_record.expiry_date
        if expiry >= today_provider() - timedelta(days=AMEND_AFTER_EXPIRY_DAYS):
            actions.add(ActionKind.AMEND)

    if status == LgStatusEnum.VALID and is_non_operative_advance_payment(lg_record):
        actions.add(ActionKind.ACTIVATE_NON_OPERATIVE)

    return actions


def is_actionable_instruction(instruction: LGInstructionOut) -> bool:
    return instruction.instruction_type in ACTIONABLE_INSTRUCTION_TYPES


def available_instruction_actions(lg_record: LGRecordOut, instruction: LGInstructionOut) -> Set[ActionKind]:
    """Delivery, reply, reminder and cancel actions offered for one instruction of a record."""
    actions: Set[ActionKind] = set()
    is_reminder = instruction.instruction_type == INSTRUCTION_TYPE_REMINDER_TO_BANKS

    if not is_actionable_instruction(instruction) and not is_reminder:
        return actions

    if instruction.delivery_date is None:
        actions.add(ActionKind.RECORD_DELIVERY)

    if is_actionable_instruction(instruction) and instruction.bank_reply_date is None:
        actions.add(ActionKind.RECORD_BANK_REPLY)
        actions.add(ActionKind.SEND_REMINDER)

    # Only the latest instruction of a record can be cancelled, and only before the bank acts on it
    latest = lg_record.latest_instruction()
    if (
        latest is not None
        and latest.id == instruction.id
        and is_actionable_instruction(instruction)
        and instruction.status in CANCELLABLE_INSTRUCTION_STATUSES
    ):
        actions.add(ActionKind.CANCEL_INSTRUCTION)

    return actions
