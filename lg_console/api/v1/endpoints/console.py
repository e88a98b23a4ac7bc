# lg_console/api/v1/endpoints/console.py
import enum
import json
import logging
from datetime import date
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status, Query, UploadFile, File, Form
from pydantic import ValidationError as PydanticValidationError

from lg_console.constants import ActionKind
from lg_console.core.action_catalog import available_instruction_actions, available_record_actions
from lg_console.core.exceptions import LGConsoleError, SessionExpiredError
from lg_console.core.security import SessionToken, can_mutate, check_subscription_status
from lg_console.schemas.all_schemas import (
    ActionCenterOut,
    ActionReport,
    AvailableActionsOut,
    DocumentUpload,
    LGInstructionCancelRequest,
    LGInstructionRecordBankReply,
    LGInstructionRecordDelivery,
    LGActivateNonOperativeRequest,
    LGRecordAmend,
    LGRecordBulkChangeOwner,
    LGRecordChangeOwner,
    LGRecordDecreaseAmount,
    LGRecordExtend,
    LGRecordLiquidation,
    LGRecordOut,
    LGRecordRelease,
    LGRecordToggleAutoRenewalRequest,
    NotificationOut,
    PresentedDocument,
    RecordCollectionOut,
)
from lg_console.services.console_session import ConsoleSession, ConsoleSessionRegistry, get_session_registry
from lg_console.services.orchestrator import ActionOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


class ConsoleView(str, enum.Enum):
    LIST = "list"
    DETAIL = "detail"
    ACTION_CENTER = "action-center"


async def get_console_session(
    session_token: SessionToken = Depends(check_subscription_status),
    registry: ConsoleSessionRegistry = Depends(get_session_registry),
) -> ConsoleSession:
    await registry.evict_stale()
    return registry.get_or_create(session_token)


def _resolve_view(
    session: ConsoleSession,
    view: ConsoleView,
    lg_record_id: Optional[int],
    read_only: bool,
) -> ActionOrchestrator:
    if view == ConsoleView.ACTION_CENTER:
        return session.action_center()
    if view == ConsoleView.DETAIL:
        if lg_record_id is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="lg_record_id is required for the detail view.")
        return session.detail_view(lg_record_id, read_only=read_only)
    return session.list_view(read_only=read_only)


async def _upload_to_document(upload: Optional[UploadFile]) -> Optional[DocumentUpload]:
    if upload is None or not upload.filename:
        return None
    content = await upload.read()
    return DocumentUpload(
        file_name=upload.filename,
        content=content,
        mime_type=upload.content_type or "application/octet-stream",
    )


def _build_payload(model, **values):
    try:
        return model(**values)
    except PydanticValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=[error["msg"] for error in e.errors()],
        )


async def _raise_for_load_error(registry: ConsoleSessionRegistry, session: ConsoleSession, error: LGConsoleError):
    if isinstance(error, SessionExpiredError):
        await registry.discard(session.token)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=error.message)
    status_code = getattr(error, "status_code", None) or status.HTTP_502_BAD_GATEWAY
    raise HTTPException(status_code=status_code, detail=error.message)


async def _complete(
    registry: ConsoleSessionRegistry,
    session: ConsoleSession,
    orchestrator: ActionOrchestrator,
    report: ActionReport,
    wait_for_refresh: bool,
) -> ActionReport:
    if wait_for_refresh:
        await orchestrator.reconciler.settle()
    # The report already carries every document presented for this action
    session.presenter.drain()
    if session.expired:
        await registry.discard(session.token)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=report.message)
    return report


# --------------------------------------------------------------------------------------
# Views
# --------------------------------------------------------------------------------------
@router.get("/lg-records", response_model=RecordCollectionOut, summary="Load or refresh the LG record list")
async def get_lg_record_list(
    background: bool = Query(False, description="Refresh without the initial loading indicator."),
    read_only: bool = Query(False, description="Corporate admin read-only list."),
    session: ConsoleSession = Depends(get_console_session),
    registry: ConsoleSessionRegistry = Depends(get_session_registry),
):
    view = session.list_view(read_only=read_only)
    try:
        await view.reconciler.reload(background=background)
    except LGConsoleError as e:
        if not background:
            await _raise_for_load_error(registry, session, e)
    return view.reconciler.collection_state()


@router.get("/lg-records/{lg_record_id}", response_model=LGRecordOut, summary="Load one LG record")
async def get_lg_record_detail(
    lg_record_id: int,
    background: bool = Query(False),
    read_only: bool = Query(False),
    session: ConsoleSession = Depends(get_console_session),
    registry: ConsoleSessionRegistry = Depends(get_session_registry),
):
    view = session.detail_view(lg_record_id, read_only=read_only)
    try:
        await view.reconciler.reload(background=background)
    except LGConsoleError as e:
        await _raise_for_load_error(registry, session, e)
    return view.store.get(lg_record_id)


@router.get("/action-center", response_model=ActionCenterOut, summary="Load or refresh the action center")
async def get_action_center(
    background: bool = Query(False),
    session: ConsoleSession = Depends(get_console_session),
    registry: ConsoleSessionRegistry = Depends(get_session_registry),
):
    view = session.action_center()
    try:
        await view.reconciler.reload(background=background)
    except LGConsoleError as e:
        if not background:
            await _raise_for_load_error(registry, session, e)
    return view.reconciler.action_center_state()


@router.get(
    "/lg-records/{lg_record_id}/available-actions",
    response_model=AvailableActionsOut,
    summary="Actions offered for an LG record and its instructions",
)
async def get_available_actions(
    lg_record_id: int,
    session: ConsoleSession = Depends(get_console_session),
    registry: ConsoleSessionRegistry = Depends(get_session_registry),
):
    view = session.detail_view(lg_record_id)
    try:
        record = await view.reconciler.lookup(lg_record_id)
    except LGConsoleError as e:
        await _raise_for_load_error(registry, session, e)

    subscription_status = session.subscription.status
    mutation_allowed = can_mutate(subscription_status)
    actions = sorted(available_record_actions(record), key=lambda a: a.value) if mutation_allowed else []
    instruction_actions = {}
    if mutation_allowed:
        for instruction in record.instructions:
            offered = available_instruction_actions(record, instruction)
            if offered:
                instruction_actions[instruction.id] = sorted(offered, key=lambda a: a.value)

    return AvailableActionsOut(
        lg_record_id=record.id,
        lg_status=record.status_name,
        subscription_status=subscription_status,
        can_mutate=mutation_allowed,
        actions=actions,
        instruction_actions=instruction_actions,
    )


# --------------------------------------------------------------------------------------
# Record actions
# --------------------------------------------------------------------------------------
@router.post("/lg-records/{lg_record_id}/extend", response_model=ActionReport, summary="Extend an LG record")
async def extend_lg_record(
    lg_record_id: int,
    extend_in: LGRecordExtend,
    view: ConsoleView = Query(ConsoleView.LIST),
    wait_for_refresh: bool = Query(True),
    session: ConsoleSession = Depends(get_console_session),
    registry: ConsoleSessionRegistry = Depends(get_session_registry),
):
    orchestrator = _resolve_view(session, view, lg_record_id, read_only=False)
    report = await orchestrator.run_record_action(ActionKind.EXTEND, lg_record_id, extend_in)
    return await _complete(registry, session, orchestrator, report, wait_for_refresh)


@router.post("/lg-records/{lg_record_id}/release", response_model=ActionReport, summary="Release an LG record")
async def release_lg_record(
    lg_record_id: int,
    release_in: LGRecordRelease,
    view: ConsoleView = Query(ConsoleView.LIST),
    wait_for_refresh: bool = Query(True),
    session: ConsoleSession = Depends(get_console_session),
    registry: ConsoleSessionRegistry = Depends(get_session_registry),
):
    orchestrator = _resolve_view(session, view, lg_record_id, read_only=False)
    report = await orchestrator.run_record_action(ActionKind.RELEASE, lg_record_id, release_in)
    return await _complete(registry, session, orchestrator, report, wait_for_refresh)


@router.post("/lg-records/{lg_record_id}/liquidate", response_model=ActionReport, summary="Liquidate an LG record")
async def liquidate_lg_record(
    lg_record_id: int,
    liquidation_in: LGRecordLiquidation,
    view: ConsoleView = Query(ConsoleView.LIST),
    wait_for_refresh: bool = Query(True),
    session: ConsoleSession = Depends(get_console_session),
    registry: ConsoleSessionRegistry = Depends(get_session_registry),
):
    orchestrator = _resolve_view(session, view, lg_record_id, read_only=False)
    report = await orchestrator.run_record_action(ActionKind.LIQUIDATE, lg_record_id, liquidation_in)
    return await _complete(registry, session, orchestrator, report, wait_for_refresh)


@router.post("/lg-records/{lg_record_id}/decrease-amount", response_model=ActionReport, summary="Decrease the amount of an LG record")
async def decrease_lg_amount(
    lg_record_id: int,
    decrease_amount: Decimal = Form(..., description="The amount to decrease the LG by."),
    reason: str = Form(..., description="Reason for decreasing the LG amount."),
    internal_supporting_document_file: Optional[UploadFile] = File(None, description="Optional internal supporting document."),
    view: ConsoleView = Query(ConsoleView.LIST),
    wait_for_refresh: bool = Query(True),
    session: ConsoleSession = Depends(get_console_session),
    registry: ConsoleSessionRegistry = Depends(get_session_registry),
):
    payload = _build_payload(
        LGRecordDecreaseAmount,
        decrease_amount=decrease_amount,
        reason=reason,
        internal_supporting_document_file=await _upload_to_document(internal_supporting_document_file),
    )
    orchestrator = _resolve_view(session, view, lg_record_id, read_only=False)
    report = await orchestrator.run_record_action(ActionKind.DECREASE_AMOUNT, lg_record_id, payload)
    return await _complete(registry, session, orchestrator, report, wait_for_refresh)


@router.post("/lg-records/{lg_record_id}/change-owner", response_model=ActionReport, summary="Change the internal owner of an LG record")
async def change_lg_owner(
    lg_record_id: int,
    change_owner_in: LGRecordChangeOwner,
    view: ConsoleView = Query(ConsoleView.LIST),
    wait_for_refresh: bool = Query(True),
    session: ConsoleSession = Depends(get_console_session),
    registry: ConsoleSessionRegistry = Depends(get_session_registry),
):
    orchestrator = _resolve_view(session, view, lg_record_id, read_only=False)
    report = await orchestrator.run_record_action(ActionKind.CHANGE_OWNER, lg_record_id, change_owner_in)
    return await _complete(registry, session, orchestrator, report, wait_for_refresh)


@router.post("/lg-records/{lg_record_id}/toggle-auto-renewal", response_model=ActionReport, summary="Toggle auto-renewal of an LG record")
async def toggle_lg_auto_renewal(
    lg_record_id: int,
    toggle_in: LGRecordToggleAutoRenewalRequest,
    view: ConsoleView = Query(ConsoleView.LIST),
    wait_for_refresh: bool = Query(True),
    session: ConsoleSession = Depends(get_console_session),
    registry: ConsoleSessionRegistry = Depends(get_session_registry),
):
    orchestrator = _resolve_view(session, view, lg_record_id, read_only=False)
    report = await orchestrator.toggle_auto_renewal(lg_record_id, toggle_in.auto_renewal, toggle_in.reason)
    return await _complete(registry, session, orchestrator, report, wait_for_refresh)


@router.post("/lg-records/{lg_record_id}/amend", response_model=ActionReport, summary="Amend an LG record from a bank amendment letter")
async def amend_lg_record(
    lg_record_id: int,
    amendment_details_json_str: str = Form(..., alias="amendment_details", description="JSON string of LGRecord fields to be amended"),
    reason: Optional[str] = Form(None, description="Reason for amending the LG."),
    amendment_letter_file: UploadFile = File(..., description="Scanned bank amendment letter (PDF or image)"),
    view: ConsoleView = Query(ConsoleView.LIST),
    wait_for_refresh: bool = Query(True),
    session: ConsoleSession = Depends(get_console_session),
    registry: ConsoleSessionRegistry = Depends(get_session_registry),
):
    try:
        amendment_details = json.loads(amendment_details_json_str)
    except json.JSONDecodeError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON format for 'amendment_details'.")

    payload = _build_payload(
        LGRecordAmend,
        amendment_details=amendment_details,
        reason=reason,
        amendment_letter_file=await _upload_to_document(amendment_letter_file),
    )
    orchestrator = _resolve_view(session, view, lg_record_id, read_only=False)
    report = await orchestrator.run_record_action(ActionKind.AMEND, lg_record_id, payload)
    return await _complete(registry, session, orchestrator, report, wait_for_refresh)


@router.post(
    "/lg-records/{lg_record_id}/activate-non-operative",
    response_model=ActionReport,
    summary="Activate a non-operative advance payment LG",
)
async def activate_non_operative_lg_record(
    lg_record_id: int,
    payment_method: str = Form(..., description="Payment method used (e.g., 'Wire', 'Check')"),
    currency_id: int = Form(..., description="ID of the Currency for the payment."),
    amount: Decimal = Form(..., description="The payment amount."),
    payment_reference: str = Form(..., description="Wire reference or check number."),
    issuing_bank_id: int = Form(..., description="ID of the Issuing Bank related to the payment."),
    payment_date: date = Form(..., description="Date the payment was made."),
    notes: Optional[str] = Form(None, description="Additional notes for the action."),
    internal_supporting_document_file: Optional[UploadFile] = File(None, description="Optional internal supporting document."),
    view: ConsoleView = Query(ConsoleView.DETAIL),
    wait_for_refresh: bool = Query(True),
    session: ConsoleSession = Depends(get_console_session),
    registry: ConsoleSessionRegistry = Depends(get_session_registry),
):
    payload = _build_payload(
        LGActivateNonOperativeRequest,
        payment_method=payment_method,
        currency_id=currency_id,
        amount=amount,
        payment_reference=payment_reference,
        issuing_bank_id=issuing_bank_id,
        payment_date=payment_date,
        notes=notes,
        internal_supporting_document_file=await _upload_to_document(internal_supporting_document_file),
    )
    orchestrator = _resolve_view(session, view, lg_record_id, read_only=False)
    report = await orchestrator.run_record_action(ActionKind.ACTIVATE_NON_OPERATIVE, lg_record_id, payload)
    return await _complete(registry, session, orchestrator, report, wait_for_refresh)


# --------------------------------------------------------------------------------------
# Instruction actions
# --------------------------------------------------------------------------------------
@router.post("/instructions/{instruction_id}/record-delivery", response_model=ActionReport, summary="Record delivery of an instruction to the bank")
async def record_instruction_delivery(
    instruction_id: int,
    delivery_date: date = Form(..., description="The date the instruction was delivered to the bank."),
    delivery_document_file: Optional[UploadFile] = File(None, description="Optional document proving delivery."),
    view: ConsoleView = Query(ConsoleView.DETAIL),
    lg_record_id: Optional[int] = Query(None),
    wait_for_refresh: bool = Query(True),
    session: ConsoleSession = Depends(get_console_session),
    registry: ConsoleSessionRegistry = Depends(get_session_registry),
):
    payload = _build_payload(
        LGInstructionRecordDelivery,
        delivery_date=delivery_date,
        delivery_document_file=await _upload_to_document(delivery_document_file),
    )
    orchestrator = _resolve_view(session, view, lg_record_id, read_only=False)
    report = await orchestrator.run_instruction_action(ActionKind.RECORD_DELIVERY, instruction_id, payload)
    return await _complete(registry, session, orchestrator, report, wait_for_refresh)


@router.post("/instructions/{instruction_id}/record-bank-reply", response_model=ActionReport, summary="Record the bank's reply to an instruction")
async def record_instruction_bank_reply(
    instruction_id: int,
    bank_reply_date: date = Form(..., description="The date the bank's reply was received."),
    reply_details: Optional[str] = Form(None, description="Details or notes from the bank's reply."),
    bank_reply_document_file: Optional[UploadFile] = File(None, description="Optional document proving the bank's reply."),
    view: ConsoleView = Query(ConsoleView.DETAIL),
    lg_record_id: Optional[int] = Query(None),
    wait_for_refresh: bool = Query(True),
    session: ConsoleSession = Depends(get_console_session),
    registry: ConsoleSessionRegistry = Depends(get_session_registry),
):
    payload = _build_payload(
        LGInstructionRecordBankReply,
        bank_reply_date=bank_reply_date,
        reply_details=reply_details,
        bank_reply_document_file=await _upload_to_document(bank_reply_document_file),
    )
    orchestrator = _resolve_view(session, view, lg_record_id, read_only=False)
    report = await orchestrator.run_instruction_action(ActionKind.RECORD_BANK_REPLY, instruction_id, payload)
    return await _complete(registry, session, orchestrator, report, wait_for_refresh)


@router.post("/instructions/{instruction_id}/send-reminder", response_model=ActionReport, summary="Send a reminder to the bank for an instruction")
async def send_instruction_reminder(
    instruction_id: int,
    view: ConsoleView = Query(ConsoleView.DETAIL),
    lg_record_id: Optional[int] = Query(None),
    wait_for_refresh: bool = Query(True),
    session: ConsoleSession = Depends(get_console_session),
    registry: ConsoleSessionRegistry = Depends(get_session_registry),
):
    orchestrator = _resolve_view(session, view, lg_record_id, read_only=False)
    report = await orchestrator.run_instruction_action(ActionKind.SEND_REMINDER, instruction_id)
    return await _complete(registry, session, orchestrator, report, wait_for_refresh)


@router.post("/instructions/{instruction_id}/cancel", response_model=ActionReport, summary="Cancel the last instruction of an LG")
async def cancel_instruction(
    instruction_id: int,
    cancel_in: LGInstructionCancelRequest,
    view: ConsoleView = Query(ConsoleView.DETAIL),
    lg_record_id: Optional[int] = Query(None),
    wait_for_refresh: bool = Query(True),
    session: ConsoleSession = Depends(get_console_session),
    registry: ConsoleSessionRegistry = Depends(get_session_registry),
):
    orchestrator = _resolve_view(session, view, lg_record_id, read_only=False)
    report = await orchestrator.run_instruction_action(ActionKind.CANCEL_INSTRUCTION, instruction_id, cancel_in)
    return await _complete(registry, session, orchestrator, report, wait_for_refresh)


@router.get("/instructions/{instruction_id}/letter", response_model=PresentedDocument, summary="Open the letter of an instruction")
async def view_instruction_letter(
    instruction_id: int,
    view: ConsoleView = Query(ConsoleView.DETAIL),
    lg_record_id: Optional[int] = Query(None),
    read_only: bool = Query(False),
    session: ConsoleSession = Depends(get_console_session),
):
    orchestrator = _resolve_view(session, view, lg_record_id, read_only=read_only)
    document = await orchestrator.view_letter(instruction_id)
    session.presenter.drain()
    if document is None:
        pending = session.notifications.peek()
        detail = pending[-1].message if pending else "Could not open letter."
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail)
    return document


@router.get("/lg-records/{lg_record_id}/latest-letter", response_model=PresentedDocument, summary="Open the letter of an LG's latest instruction")
async def view_latest_lg_letter(
    lg_record_id: int,
    read_only: bool = Query(False),
    session: ConsoleSession = Depends(get_console_session),
    registry: ConsoleSessionRegistry = Depends(get_session_registry),
):
    orchestrator = session.detail_view(lg_record_id, read_only=read_only)
    try:
        document = await orchestrator.view_latest_letter(lg_record_id)
    except LGConsoleError as e:
        await _raise_for_load_error(registry, session, e)
    session.presenter.drain()
    if document is None:
        pending = session.notifications.peek()
        detail = pending[-1].message if pending else "Could not open letter."
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)
    return document


# --------------------------------------------------------------------------------------
# Collection actions
# --------------------------------------------------------------------------------------
@router.post("/lg-records/run-auto-renewal", response_model=ActionReport, summary="Renew all eligible LGs")
async def run_auto_renewal(
    view: ConsoleView = Query(ConsoleView.LIST),
    wait_for_refresh: bool = Query(True),
    session: ConsoleSession = Depends(get_console_session),
    registry: ConsoleSessionRegistry = Depends(get_session_registry),
):
    orchestrator = _resolve_view(session, view, None, read_only=False)
    report = await orchestrator.run_bulk_renewal()
    return await _complete(registry, session, orchestrator, report, wait_for_refresh)


@router.post("/internal-owners/{old_internal_owner_contact_id}/change-owner", response_model=ActionReport, summary="Move all LGs of one owner to another owner")
async def change_owner_for_all_lgs(
    old_internal_owner_contact_id: int,
    change_owner_in: LGRecordChangeOwner,
    view: ConsoleView = Query(ConsoleView.LIST),
    wait_for_refresh: bool = Query(True),
    session: ConsoleSession = Depends(get_console_session),
    registry: ConsoleSessionRegistry = Depends(get_session_registry),
):
    payload = _build_payload(
        LGRecordBulkChangeOwner,
        old_internal_owner_contact_id=old_internal_owner_contact_id,
        new_internal_owner_contact_id=change_owner_in.new_internal_owner_contact_id,
        new_internal_owner_contact_details=change_owner_in.new_internal_owner_contact_details,
        reason=change_owner_in.reason,
    )
    orchestrator = _resolve_view(session, view, None, read_only=False)
    report = await orchestrator.change_owner_for_all(payload)
    return await _complete(registry, session, orchestrator, report, wait_for_refresh)


@router.post("/instructions/generate-bulk-reminders", response_model=ActionReport, summary="Generate reminders for all eligible instructions")
async def generate_bulk_reminders(
    view: ConsoleView = Query(ConsoleView.ACTION_CENTER),
    wait_for_refresh: bool = Query(True),
    session: ConsoleSession = Depends(get_console_session),
    registry: ConsoleSessionRegistry = Depends(get_session_registry),
):
    orchestrator = _resolve_view(session, view, None, read_only=False)
    report = await orchestrator.generate_bulk_reminders()
    return await _complete(registry, session, orchestrator, report, wait_for_refresh)


# --------------------------------------------------------------------------------------
# Notifications
# --------------------------------------------------------------------------------------
@router.get("/notifications", response_model=List[NotificationOut], summary="Drain pending notifications")
async def drain_notifications(session: ConsoleSession = Depends(get_console_session)):
    return session.notifications.drain()
