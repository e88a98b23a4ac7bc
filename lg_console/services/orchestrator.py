# lg_console/services/orchestrator.py
"""
The action invocation boundary shared by every console view.

One call runs gate -> catalog -> executor -> reconciler -> letter, in that order,
and turns every failure on that path into a notification and an ActionReport.
"""
import logging
from contextlib import contextmanager
from typing import Callable, Optional, Set, Tuple

from lg_console.constants import (
    ActionKind,
    ACTION_WORDING,
    SUBMISSION_IN_PROGRESS_MESSAGE,
)
from lg_console.core.action_catalog import available_instruction_actions, available_record_actions
from lg_console.core.exceptions import (
    ActionNotAvailable,
    GateRefusal,
    LGConsoleError,
    MalformedResponseError,
    NetworkError,
    RemoteError,
    SessionExpiredError,
    SideEffectError,
    SubmissionInProgress,
    ValidationError,
)
from lg_console.core.security import check_for_read_only_mode
from lg_console.schemas.all_schemas import (
    ActionOutcome,
    ActionPayload,
    ActionReport,
    Applied,
    InstructionActionResult,
    LGInstructionOut,
    LGRecordOut,
    LGRecordBulkChangeOwner,
    LGRecordToggleAutoRenewalRequest,
    Pending,
    OwnerChangeSummaryOut,
    PresentedDocument,
)
from lg_console.services.action_executor import ActionExecutor
from lg_console.services.notifications import NotificationCenter
from lg_console.services.reconciler import CommitReceipt, StateReconciler
from lg_console.services.side_effects import LetterSequencer

logger = logging.getLogger(__name__)


class ActionOrchestrator:
    def __init__(
        self,
        executor: ActionExecutor,
        reconciler: StateReconciler,
        sequencer: LetterSequencer,
        notifications: NotificationCenter,
        on_session_expired: Optional[Callable[[], None]] = None,
    ):
        self.executor = executor
        self.reconciler = reconciler
        self.sequencer = sequencer
        self.notifications = notifications
        self._on_session_expired = on_session_expired
        self._in_flight: Set[Tuple[ActionKind, Optional[int]]] = set()

    @property
    def store(self):
        return self.reconciler.store

    def is_submitting(self, action: ActionKind, target_id: Optional[int] = None) -> bool:
        return (action, target_id) in self._in_flight

    @contextmanager
    def _submission(self, action: ActionKind, target_id: Optional[int]):
        # One submission per control; a second click is refused without a network call
        key = (action, target_id)
        if key in self._in_flight:
            raise SubmissionInProgress(SUBMISSION_IN_PROGRESS_MESSAGE)
        self._in_flight.add(key)
        try:
            yield
        finally:
            self._in_flight.discard(key)

    def _check_gate(self) -> None:
        check_for_read_only_mode(self.executor.subscription(), read_only_view=self.store.read_only)

    # --- Record actions ---

    async def run_record_action(self, action: ActionKind, record_id: int, payload: ActionPayload) -> ActionReport:
        try:
            with self._submission(action, record_id):
                return await self._run_record_action(action, record_id, payload)
        except LGConsoleError as e:
            return self._report_failure(action, record_id, e)

    async def toggle_auto_renewal(self, record_id: int, auto_renewal: bool, reason: Optional[str] = None) -> ActionReport:
        payload = LGRecordToggleAutoRenewalRequest(auto_renewal=auto_renewal, reason=reason)
        return await self.run_record_action(ActionKind.TOGGLE_AUTO_RENEWAL, record_id, payload)

    async def _run_record_action(self, action: ActionKind, record_id: int, payload: ActionPayload) -> ActionReport:
        self._check_gate()
        record = await self.reconciler.lookup(record_id)
        if action not in available_record_actions(record):
            raise ActionNotAvailable(f"{action.value} is not available for an LG in status '{record.status_name}'.")

        if action == ActionKind.TOGGLE_AUTO_RENEWAL:
            outcome = await self.reconciler.toggle_auto_renewal(
                record_id,
                payload.auto_renewal,
                lambda: self.executor.execute(action, payload, record),
            )
            receipt = CommitReceipt(record_id)
            receipt.commit(outcome.lg_record if isinstance(outcome, Applied) else outcome.provisional_record)
        else:
            outcome = await self.executor.execute(action, payload, record)
            if isinstance(outcome, OwnerChangeSummaryOut):
                return await self._finish_owner_change(record, outcome)
            receipt = self.reconciler.apply_outcome(outcome)

        return await self._finish(action, record, outcome, receipt)

    async def _finish(self, action: ActionKind, record: LGRecordOut, outcome: ActionOutcome, receipt: CommitReceipt) -> ActionReport:
        noun, past_tense, _ = ACTION_WORDING[action]

        if isinstance(outcome, Pending):
            message = f"LG {noun} request submitted for approval. Request ID: {outcome.approval_request_id}."
            self.notifications.info(message)
            if self.store.refresh_after_every_action:
                self.reconciler.schedule_background_refresh()
            return ActionReport(
                action=action,
                status="pending",
                message=message,
                target_id=record.id,
                lg_record=outcome.provisional_record or self.store.get(record.id),
                approval_request_id=outcome.approval_request_id,
            )

        updated = outcome.lg_record
        if action == ActionKind.TOGGLE_AUTO_RENEWAL:
            message = f"Auto-renewal for LG {updated.lg_number} turned {'ON' if updated.auto_renewal else 'OFF'}."
        else:
            message = f"LG {updated.lg_number} {past_tense} successfully!"
        self.notifications.success(message)

        report = ActionReport(
            action=action,
            status="applied",
            message=message,
            target_id=updated.id,
            lg_record=updated,
            latest_instruction_id=outcome.latest_instruction_id,
        )

        if outcome.latest_instruction_id:
            document = await self._open_letter(report, outcome.latest_instruction_id, receipt, updated.lg_number)
            if document is not None:
                report.documents.append(document)

        if self.store.refresh_after_every_action or (
            self.store.refresh_after_applied_without_letter and not outcome.latest_instruction_id
        ):
            self.reconciler.schedule_background_refresh()
        return report

    async def _open_letter(
        self,
        report: ActionReport,
        instruction_id: int,
        receipt: Optional[CommitReceipt],
        lg_number: Optional[str],
    ) -> Optional[PresentedDocument]:
        try:
            return await self.sequencer.open_letter(instruction_id, receipt=receipt, lg_number=lg_number)
        except SideEffectError as e:
            # The action itself succeeded; only the letter failed to open
            logger.warning(f"Letter for instruction {instruction_id} could not be opened: {e.message}")
            self.notifications.error(e.message)
            report.side_effect_error = e.message
            return None

    async def _finish_owner_change(self, record: LGRecordOut, summary: OwnerChangeSummaryOut) -> ActionReport:
        # The change is confirmed but the new owner is not in the body; re-read the record
        message = f"LG Owner for {record.lg_number} changed successfully!"
        self.notifications.success(message)
        report = ActionReport(
            action=ActionKind.CHANGE_OWNER,
            status="applied",
            message=message,
            target_id=record.id,
            lg_record=record,
            affected_lg_numbers=summary.affected_lg_numbers,
        )
        await self._refresh_after_action(report, record.id)
        return report

    # --- Instruction actions ---

    async def run_instruction_action(
        self,
        action: ActionKind,
        instruction_id: int,
        payload: Optional[ActionPayload] = None,
    ) -> ActionReport:
        try:
            with self._submission(action, instruction_id):
                return await self._run_instruction_action(action, instruction_id, payload)
        except LGConsoleError as e:
            return self._report_failure(action, instruction_id, e)

    async def _run_instruction_action(
        self,
        action: ActionKind,
        instruction_id: int,
        payload: Optional[ActionPayload],
    ) -> ActionReport:
        self._check_gate()
        record, instruction = self.store.find_instruction(instruction_id)
        if instruction is None:
            raise ValidationError(
                "This instruction is not part of the current view. Refresh and try again.",
                field_errors={"instruction_id": f"Instruction {instruction_id} was not found."},
            )
        if record is None and instruction.lg_record_id is not None:
            record = await self.reconciler.lookup(instruction.lg_record_id)
        if record is not None and action not in available_instruction_actions(record, instruction):
            raise ActionNotAvailable(f"{action.value} is not available for instruction {instruction.serial_number}.")

        result = await self.executor.execute_instruction_action(action, payload, instruction, lg_record=record)
        return await self._finish_instruction_action(action, instruction, record, result)

    async def _finish_instruction_action(
        self,
        action: ActionKind,
        instruction: LGInstructionOut,
        record: Optional[LGRecordOut],
        result: InstructionActionResult,
    ) -> ActionReport:
        report = ActionReport(
            action=action,
            status="applied",
            message="",
            target_id=instruction.id,
            lg_record=record,
        )

        if result.outcome is not None:
            receipt = self.reconciler.apply_outcome(result.outcome)
            if isinstance(result.outcome, Pending):
                noun = ACTION_WORDING[action][0]
                report.status = "pending"
                report.approval_request_id = result.outcome.approval_request_id
                report.message = result.message or f"{noun} request submitted for approval. Request ID: {result.outcome.approval_request_id}."
                report.lg_record = result.outcome.provisional_record or record
                self.notifications.info(report.message)
                if self.store.refresh_after_every_action:
                    self.reconciler.schedule_background_refresh()
                return report
            report.lg_record = result.outcome.lg_record
            report.latest_instruction_id = result.outcome.latest_instruction_id
            report.message = self._instruction_success_message(action, instruction, result)
            self.notifications.success(report.message)
            if result.outcome.latest_instruction_id:
                document = await self._open_letter(
                    report, result.outcome.latest_instruction_id, receipt, result.outcome.lg_record.lg_number
                )
                if document is not None:
                    report.documents.append(document)
            if self.store.refresh_after_every_action:
                self.reconciler.schedule_background_refresh()
            return report

        report.message = self._instruction_success_message(action, instruction, result)
        if action == ActionKind.SEND_REMINDER:
            self.notifications.info(report.message)
        else:
            self.notifications.success(report.message)

        # No record came back: re-read the owning record before opening anything
        await self._refresh_after_action(report, result.lg_record_id)

        if action == ActionKind.SEND_REMINDER:
            document = None
            if result.html_document:
                try:
                    document = await self.sequencer.present_html(
                        result.html_document, f"Bank reminder for {instruction.serial_number}", instruction.id
                    )
                except SideEffectError as e:
                    self.notifications.error(e.message)
                    report.side_effect_error = e.message
            elif result.new_instruction_id:
                lg_number = report.lg_record.lg_number if report.lg_record else None
                document = await self._open_letter(report, result.new_instruction_id, None, lg_number)
            report.latest_instruction_id = result.new_instruction_id
            if document is not None:
                report.documents.append(document)
        return report

    async def _refresh_after_action(self, report: ActionReport, lg_record_id: Optional[int]) -> None:
        if self.store.refresh_after_every_action:
            self.reconciler.schedule_background_refresh()
            return
        if lg_record_id is None:
            return
        try:
            report.lg_record = await self.reconciler.refresh_record(lg_record_id)
        except LGConsoleError as e:
            # The action itself succeeded; only the follow-up read failed
            logger.warning(f"Refresh of LG record {lg_record_id} failed after {report.action.value}: {e.message}")
            report.refresh_error = e.message
            self.notifications.warning(f"The action succeeded but the LG could not be refreshed: {e.message}")

    @staticmethod
    def _instruction_success_message(action: ActionKind, instruction: LGInstructionOut, result: InstructionActionResult) -> str:
        serial = instruction.serial_number or instruction.id
        if action == ActionKind.RECORD_DELIVERY:
            return f"Delivery recorded successfully for Instruction {serial}!"
        if action == ActionKind.RECORD_BANK_REPLY:
            return f"Bank reply recorded successfully for Instruction {serial}!"
        if action == ActionKind.SEND_REMINDER:
            return result.message or f"Reminder generated for #{serial}."
        if action == ActionKind.CANCEL_INSTRUCTION:
            return result.message or f"Instruction {serial} cancelled successfully."
        return result.message or f"Instruction {serial} updated successfully."

    # --- Collection actions ---

    async def run_bulk_renewal(self) -> ActionReport:
        action = ActionKind.RUN_BULK_RENEWAL
        try:
            with self._submission(action, None):
                self._check_gate()
                summary = await self.executor.run_bulk_renewal()
                report = ActionReport(action=action, status="applied", message=summary.message)
                self.notifications.success(summary.message)
                if summary.combined_pdf_base64:
                    await self._present_pdf(report, summary.combined_pdf_base64, "Auto-renewal instructions")
                self.reconciler.schedule_background_refresh()
                return report
        except LGConsoleError as e:
            return self._report_failure(action, None, e)

    async def change_owner_for_all(self, payload: LGRecordBulkChangeOwner) -> ActionReport:
        action = ActionKind.BULK_CHANGE_OWNER
        try:
            with self._submission(action, payload.old_internal_owner_contact_id):
                self._check_gate()
                outcome = await self.executor.change_owner_for_all(payload)
                if isinstance(outcome, Pending):
                    message = f"Bulk LG Owner change request submitted for approval. Request ID: {outcome.approval_request_id}."
                    self.notifications.info(message)
                    report = ActionReport(
                        action=action,
                        status="pending",
                        message=message,
                        target_id=payload.old_internal_owner_contact_id,
                        approval_request_id=outcome.approval_request_id,
                    )
                else:
                    if isinstance(outcome, Applied):
                        self.reconciler.apply_outcome(outcome)
                        affected, count = [outcome.lg_record.lg_number], 1
                    else:
                        affected, count = outcome.affected_lg_numbers, outcome.affected_lgs_count
                    message = f"Bulk LG Owner for {count} LGs changed successfully!"
                    self.notifications.success(message)
                    report = ActionReport(
                        action=action,
                        status="applied",
                        message=message,
                        target_id=payload.old_internal_owner_contact_id,
                        affected_lg_numbers=affected,
                    )
                # Any number of records may have moved; only a full reload shows them all
                self.reconciler.schedule_background_refresh()
                return report
        except LGConsoleError as e:
            return self._report_failure(action, payload.old_internal_owner_contact_id, e)

    async def generate_bulk_reminders(self) -> ActionReport:
        action = ActionKind.GENERATE_BULK_REMINDERS
        try:
            with self._submission(action, None):
                self._check_gate()
                result = await self.executor.generate_bulk_reminders()
                report = ActionReport(action=action, status="applied", message=result.message)
                self.notifications.success(result.message)
                if result.combined_pdf_base64:
                    await self._present_pdf(report, result.combined_pdf_base64, "Bank reminders")
                self.reconciler.schedule_background_refresh()
                return report
        except LGConsoleError as e:
            return self._report_failure(action, None, e)

    async def _present_pdf(self, report: ActionReport, content_base64: str, title: str) -> None:
        try:
            report.documents.append(await self.sequencer.present_pdf(content_base64, title))
        except SideEffectError as e:
            self.notifications.error(e.message)
            report.side_effect_error = e.message

    # --- Letters ---

    async def view_letter(self, instruction_id: Optional[int]) -> Optional[PresentedDocument]:
        """Opens an existing letter. Not a mutation, so the subscription gate does not apply."""
        record, _ = self.store.find_instruction(instruction_id) if instruction_id else (None, None)
        try:
            return await self.sequencer.open_letter(instruction_id, lg_number=record.lg_number if record else None)
        except SideEffectError as e:
            self.notifications.error(e.message)
            return None

    async def view_latest_letter(self, lg_record_id: int) -> Optional[PresentedDocument]:
        record = await self.reconciler.lookup(lg_record_id)
        try:
            return await self.sequencer.open_latest_letter(record)
        except SideEffectError as e:
            self.notifications.error(e.message)
            return None

    # --- Failure reporting ---

    def _report_failure(self, action: ActionKind, target_id: Optional[int], error: LGConsoleError) -> ActionReport:
        infinitive = ACTION_WORDING[action][2]

        if isinstance(error, GateRefusal):
            logger.info(f"{action.value} refused before submission: {error.message}")
            self.notifications.warning(error.message)
            return ActionReport(action=action, status="refused", message=error.message, target_id=target_id)

        message = f"Failed to {infinitive}: {error.message}"

        if isinstance(error, ValidationError):
            self.notifications.error(message, field_errors=error.field_errors)
            return ActionReport(
                action=action, status="invalid", message=message, target_id=target_id, field_errors=error.field_errors
            )

        if isinstance(error, NetworkError):
            logger.error(f"{action.value} on {target_id} failed in transport: {error.cause!r}")
        elif isinstance(error, RemoteError):
            logger.warning(f"{action.value} on {target_id} rejected (status {error.status_code}): {error.message}")
        else:
            logger.error(f"{action.value} on {target_id} failed: {error.message}", exc_info=True)

        if isinstance(error, MalformedResponseError):
            # The authority may have applied the change; resync instead of guessing
            self.reconciler.schedule_background_refresh()
        if isinstance(error, SessionExpiredError) and self._on_session_expired is not None:
            self._on_session_expired()

        self.notifications.error(message)
        return ActionReport(action=action, status="failed", message=message, target_id=target_id)
