# lg_console/services/action_executor.py
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from lg_console.constants import (
    ActionKind,
    InternalOwnerChangeScope,
    LiquidationType,
    RECORD_ACTIONS,
    INSTRUCTION_ACTIONS,
    DOCUMENT_TYPE_DELIVERY_PROOF,
    DOCUMENT_TYPE_BANK_REPLY,
)
from lg_console.core.exceptions import MalformedResponseError
from lg_console.core.lg_validation_service import LGActionValidationService
from lg_console.core.security import SubscriptionContext, check_for_read_only_mode
from lg_console.schemas.all_schemas import (
    ActionOutcome,
    ActionPayload,
    Applied,
    Pending,
    AutoRenewalRunSummaryOut,
    BulkRemindersOut,
    DocumentUpload,
    InstructionActionResult,
    LGInstructionOut,
    LGRecordOut,
    LGRecordExtend,
    LGRecordRelease,
    LGRecordLiquidation,
    LGRecordDecreaseAmount,
    LGRecordChangeOwner,
    LGRecordBulkChangeOwner,
    LGRecordToggleAutoRenewalRequest,
    LGRecordAmend,
    LGActivateNonOperativeRequest,
    OwnerChangeOutcome,
    OwnerChangeSummaryOut,
    LGInstructionRecordDelivery,
    LGInstructionRecordBankReply,
    LGInstructionCancelRequest,
)
from lg_console.services.api_client import LGApiClient, LG_RECORDS_PATH, INSTRUCTIONS_PATH, MultipartFiles

logger = logging.getLogger(__name__)

UNRECOGNISED_RESPONSE_MESSAGE = "The server response did not include the updated LG record or an approval request."


def parse_action_response(body: Any) -> ActionOutcome:
    """
    Turns a success body into exactly one of Applied or Pending.
    An approval_request_id selects Pending; otherwise an lg_record is required for Applied.
    Anything else fails closed with MalformedResponseError.
    """
    if not isinstance(body, dict):
        raise MalformedResponseError(UNRECOGNISED_RESPONSE_MESSAGE)

    message = body.get("message") if isinstance(body.get("message"), str) else None
    approval_request_id = body.get("approval_request_id")
    record_body = body.get("lg_record")

    try:
        if approval_request_id is not None:
            provisional = LGRecordOut.model_validate(record_body) if record_body else None
            return Pending(approval_request_id=approval_request_id, provisional_record=provisional, message=message)
        if record_body:
            return Applied(
                lg_record=LGRecordOut.model_validate(record_body),
                latest_instruction_id=body.get("latest_instruction_id"),
                message=message,
            )
    except PydanticValidationError as e:
        logger.error(f"Action response failed schema validation: {e}", exc_info=True)
        raise MalformedResponseError(UNRECOGNISED_RESPONSE_MESSAGE) from e

    logger.error(f"Action response carried neither an approval request nor a record. Keys: {sorted(body)}")
    raise MalformedResponseError(UNRECOGNISED_RESPONSE_MESSAGE)


def parse_owner_change_response(body: Any) -> OwnerChangeOutcome:
    """
    Owner changes applied directly answer with a summary ({message, affected_lgs_count,
    affected_lg_numbers}) rather than the updated record. That summary is a confirmed success;
    every other body goes through parse_action_response and fails closed there.
    """
    if (
        isinstance(body, dict)
        and body.get("approval_request_id") is None
        and not body.get("lg_record")
        and isinstance(body.get("message"), str)
    ):
        try:
            return OwnerChangeSummaryOut.model_validate(body)
        except PydanticValidationError as e:
            logger.error(f"Owner change summary failed schema validation: {e}", exc_info=True)
            raise MalformedResponseError(UNRECOGNISED_RESPONSE_MESSAGE) from e
    return parse_action_response(body)


@dataclass
class OutgoingRequest:
    path: str
    json_body: Optional[Dict[str, Any]] = None
    form_data: Optional[Dict[str, str]] = None
    files: Optional[MultipartFiles] = None

    @property
    def is_multipart(self) -> bool:
        return self.form_data is not None


def _without_none(values: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


def _file_part(document: DocumentUpload):
    return (document.file_name, document.content, document.mime_type)


def _owner_change_body(payload, scope: InternalOwnerChangeScope, **target_ids: int) -> Dict[str, Any]:
    details = payload.new_internal_owner_contact_details
    return {
        "change_scope": scope.value,
        **target_ids,
        "new_internal_owner_contact_id": payload.new_internal_owner_contact_id,
        "new_internal_owner_contact_details": details.model_dump(mode="json") if details else None,
        "reason": payload.reason,
    }


def _document_metadata(document: DocumentUpload, document_type: str, instruction_id: int) -> str:
    return json.dumps({
        "document_type": document_type,
        "file_name": document.file_name,
        "mime_type": document.mime_type,
        "lg_instruction_id": instruction_id,
    })


class ActionExecutor:
    """
    Sends LG actions to the authority and normalizes what comes back.
    The subscription gate is re-checked on every call, before any request is built.
    """

    def __init__(
        self,
        api_client: LGApiClient,
        subscription_provider: Callable[[], SubscriptionContext],
        validator: Optional[LGActionValidationService] = None,
    ):
        self.api_client = api_client
        self._subscription_provider = subscription_provider
        self.validator = validator or LGActionValidationService()

    def subscription(self) -> SubscriptionContext:
        # Read on every call; the standing can change between two actions
        return self._subscription_provider()

    def check_gate(self, read_only_view: bool = False) -> None:
        check_for_read_only_mode(self.subscription(), read_only_view=read_only_view)

    async def _send(self, request: OutgoingRequest) -> Any:
        if request.is_multipart:
            return await self.api_client.post_multipart(request.path, data=request.form_data, files=request.files)
        return await self.api_client.post_json(request.path, request.json_body)

    # --- Record actions ---

    async def execute(self, action: ActionKind, payload: ActionPayload, target: LGRecordOut) -> OwnerChangeOutcome:
        """
        Runs one record-scoped action and returns Applied or Pending, whichever the authority chose.
        A direct owner change may instead return the authority's OwnerChangeSummaryOut.
        """
        self.check_gate()
        if action not in RECORD_ACTIONS:
            raise ValueError(f"{action.value} is not a record action.")

        self.validator.ensure_valid(action, payload, lg_record=target)
        request = self._build_record_request(action, payload, target)

        logger.info(f"Submitting {action.value} for LG {target.lg_number} (ID: {target.id}).")
        body = await self._send(request)
        if action == ActionKind.CHANGE_OWNER:
            outcome = parse_owner_change_response(body)
        else:
            outcome = parse_action_response(body)
        logger.info(f"{action.value} for LG {target.id} resolved as {type(outcome).__name__}.")
        return outcome

    def _build_record_request(self, action: ActionKind, payload: ActionPayload, target: LGRecordOut) -> OutgoingRequest:
        record_path = f"{LG_RECORDS_PATH}/{target.id}"

        if action == ActionKind.EXTEND and isinstance(payload, LGRecordExtend):
            new_expiry_date = self.validator.resolve_new_expiry_date(target, payload)
            return OutgoingRequest(
                path=f"{record_path}/extend",
                json_body={"new_expiry_date": new_expiry_date.isoformat(), "notes": payload.notes},
            )

        if action == ActionKind.RELEASE and isinstance(payload, LGRecordRelease):
            return OutgoingRequest(
                path=f"{record_path}/release",
                json_body=_without_none({
                    "reason": payload.reason,
                    "notes": payload.notes,
                    "total_documents_count": payload.total_documents_count,
                    "pending_replies_count": payload.pending_replies_count,
                }),
            )

        if action == ActionKind.LIQUIDATE and isinstance(payload, LGRecordLiquidation):
            body = {"liquidation_type": payload.liquidation_type.value, "reason": payload.reason}
            if payload.liquidation_type == LiquidationType.PARTIAL:
                body["new_amount"] = str(payload.new_amount)
            return OutgoingRequest(path=f"{record_path}/liquidate", json_body=body)

        if action == ActionKind.DECREASE_AMOUNT and isinstance(payload, LGRecordDecreaseAmount):
            files = None
            if payload.internal_supporting_document_file is not None:
                files = {"internal_supporting_document_file": _file_part(payload.internal_supporting_document_file)}
            return OutgoingRequest(
                path=f"{record_path}/decrease-amount",
                form_data={"decrease_amount": str(payload.decrease_amount), "reason": payload.reason},
                files=files,
            )

        if action == ActionKind.CHANGE_OWNER and isinstance(payload, LGRecordChangeOwner):
            return OutgoingRequest(
                path=f"{LG_RECORDS_PATH}/change-owner",
                json_body=_owner_change_body(payload, InternalOwnerChangeScope.SINGLE_LG, lg_record_id=target.id),
            )

        if action == ActionKind.AMEND and isinstance(payload, LGRecordAmend):
            details = {key: value for key, value in payload.amendment_details.items() if value not in (None, "")}
            form_data = {"amendment_details": json.dumps(details, default=str)}
            if payload.reason:
                form_data["reason"] = payload.reason
            return OutgoingRequest(
                path=f"{record_path}/amend",
                form_data=form_data,
                files={"amendment_letter_file": _file_part(payload.amendment_letter_file)},
            )

        if action == ActionKind.ACTIVATE_NON_OPERATIVE and isinstance(payload, LGActivateNonOperativeRequest):
            form_data = {
                "payment_method": payload.payment_method,
                "currency_id": str(payload.currency_id),
                "amount": str(payload.amount),
                "payment_reference": payload.payment_reference,
                "issuing_bank_id": str(payload.issuing_bank_id),
                "payment_date": payload.payment_date.isoformat(),
            }
            if payload.notes:
                form_data["notes"] = payload.notes
            files = None
            if payload.internal_supporting_document_file is not None:
                files = {"internal_supporting_document_file": _file_part(payload.internal_supporting_document_file)}
            return OutgoingRequest(path=f"{record_path}/activate-non-operative", form_data=form_data, files=files)

        if action == ActionKind.TOGGLE_AUTO_RENEWAL and isinstance(payload, LGRecordToggleAutoRenewalRequest):
            reason = payload.reason or f"Auto-renewal toggled to {'ON' if payload.auto_renewal else 'OFF'} from the LG console."
            return OutgoingRequest(
                path=f"{record_path}/toggle-auto-renewal",
                json_body={"auto_renewal": payload.auto_renewal, "reason": reason},
            )

        raise ValueError(f"Payload {type(payload).__name__} does not match action {action.value}.")

    # --- Instruction actions ---

    async def execute_instruction_action(
        self,
        action: ActionKind,
        payload: Optional[ActionPayload],
        instruction: LGInstructionOut,
        lg_record: Optional[LGRecordOut] = None,
    ) -> InstructionActionResult:
        """Delivery, bank reply, reminder and cancel calls for one instruction."""
        self.check_gate()
        if action not in INSTRUCTION_ACTIONS:
            raise ValueError(f"{action.value} is not an instruction action.")
        if payload is not None:
            self.validator.ensure_valid(action, payload, lg_record=lg_record, instruction=instruction)

        instruction_path = f"{INSTRUCTIONS_PATH}/{instruction.id}"
        lg_record_id = instruction.lg_record_id or (lg_record.id if lg_record else None)
        result = InstructionActionResult(action=action, instruction_id=instruction.id, lg_record_id=lg_record_id)
        logger.info(f"Submitting {action.value} for instruction {instruction.serial_number} (ID: {instruction.id}).")

        if action == ActionKind.SEND_REMINDER:
            kind, content = await self.api_client.post_for_document(f"{instruction_path}/send-reminder-to-bank")
            if kind == "html":
                result.html_document = content
            elif isinstance(content, dict):
                result.message = content.get("message")
                result.new_instruction_id = content.get("new_instruction_id")
            else:
                raise MalformedResponseError("The server returned an unexpected response for the reminder.")
            return result

        if action == ActionKind.CANCEL_INSTRUCTION and isinstance(payload, LGInstructionCancelRequest):
            body = await self.api_client.post_json(
                f"{instruction_path}/cancel",
                {"reason": payload.reason, "declaration_confirmed": payload.declaration_confirmed},
            )
            result.outcome = parse_action_response(body)
            result.message = result.outcome.message
            return result

        request = self._build_instruction_request(action, payload, instruction, instruction_path)
        body = await self._send(request)
        if isinstance(body, dict):
            result.message = body.get("message") if isinstance(body.get("message"), str) else None
            # Some deployments answer with the owning record; patch it when present
            if body.get("lg_record") or body.get("approval_request_id") is not None:
                result.outcome = parse_action_response(body)
        return result

    def _build_instruction_request(
        self,
        action: ActionKind,
        payload: Optional[ActionPayload],
        instruction: LGInstructionOut,
        instruction_path: str,
    ) -> OutgoingRequest:
        if action == ActionKind.RECORD_DELIVERY and isinstance(payload, LGInstructionRecordDelivery):
            form_data = {"delivery_date": payload.delivery_date.isoformat()}
            files = None
            if payload.delivery_document_file is not None:
                document = payload.delivery_document_file
                files = {"delivery_document_file": _file_part(document)}
                form_data["delivery_document_metadata"] = _document_metadata(document, DOCUMENT_TYPE_DELIVERY_PROOF, instruction.id)
            return OutgoingRequest(path=f"{instruction_path}/record-delivery", form_data=form_data, files=files)

        if action == ActionKind.RECORD_BANK_REPLY and isinstance(payload, LGInstructionRecordBankReply):
            form_data = {
                "bank_reply_date": payload.bank_reply_date.isoformat(),
                "reply_details": payload.reply_details or "",
            }
            files = None
            if payload.bank_reply_document_file is not None:
                document = payload.bank_reply_document_file
                files = {"bank_reply_document_file": _file_part(document)}
                form_data["bank_reply_document_metadata"] = _document_metadata(document, DOCUMENT_TYPE_BANK_REPLY, instruction.id)
            return OutgoingRequest(path=f"{instruction_path}/record-bank-reply", form_data=form_data, files=files)

        payload_name = type(payload).__name__ if payload is not None else "None"
        raise ValueError(f"Payload {payload_name} does not match action {action.value}.")

    # --- Collection actions ---

    async def run_bulk_renewal(self) -> AutoRenewalRunSummaryOut:
        self.check_gate()
        logger.info("Submitting auto-renewal run for all eligible LGs.")
        body = await self.api_client.post_json(f"{LG_RECORDS_PATH}/run-auto-renewal", {})
        try:
            return AutoRenewalRunSummaryOut.model_validate(body)
        except PydanticValidationError as e:
            raise MalformedResponseError("The server returned an unexpected auto-renewal summary.") from e

    async def change_owner_for_all(self, payload: LGRecordBulkChangeOwner) -> OwnerChangeOutcome:
        """Moves every LG of one internal owner to another owner."""
        self.check_gate()
        self.validator.ensure_valid(ActionKind.BULK_CHANGE_OWNER, payload)
        logger.info(f"Submitting owner change for all LGs of owner contact {payload.old_internal_owner_contact_id}.")
        body = await self.api_client.post_json(
            f"{LG_RECORDS_PATH}/change-owner",
            _owner_change_body(
                payload,
                InternalOwnerChangeScope.ALL_BY_OLD_OWNER,
                old_internal_owner_contact_id=payload.old_internal_owner_contact_id,
            ),
        )
        return parse_owner_change_response(body)

    async def generate_bulk_reminders(self) -> BulkRemindersOut:
        self.check_gate()
        logger.info("Requesting consolidated bank reminders PDF.")
        # Generating the PDF issues reminder instructions, so it is never retried
        body = await self.api_client.get_json(f"{INSTRUCTIONS_PATH}/generate-all-bank-reminders-pdf", retry=False)
        try:
            return BulkRemindersOut.model_validate(body)
        except PydanticValidationError as e:
            raise MalformedResponseError("The server returned an unexpected bank reminders response.") from e
