"""
End-to-end tests of the action invocation boundary against a scripted authority.
"""
import asyncio
from datetime import date, timedelta

import httpx
import pytest

from lg_console.constants import (
    ActionKind,
    GRACE_PERIOD_REFUSAL_MESSAGE,
    LiquidationType,
    SUBMISSION_IN_PROGRESS_MESSAGE,
    SubscriptionStatus,
)
from lg_console.core.security import SubscriptionContext
from lg_console.schemas.all_schemas import (
    DocumentUpload,
    LGActivateNonOperativeRequest,
    LGInstructionRecordDelivery,
    LGRecordAmend,
    LGRecordBulkChangeOwner,
    LGRecordChangeOwner,
    LGRecordExtend,
    LGRecordLiquidation,
    LGRecordOut,
    LGRecordRelease,
    PresentedDocument,
)
from lg_console.services.reconciler import ActionCenterStore, DetailRecordStore, ListRecordStore
from lg_console.services.side_effects import CollectingPresenter

from conftest import build_orchestrator, make_instruction, make_record

RECORD_PATH = "/end-user/lg-records/42"
LIST_PATH = "/end-user/lg-records/"
MARK_PATH = "/end-user/lg-records/instructions/901/mark-as-accessed-for-print"


def _record(**overrides) -> LGRecordOut:
    return LGRecordOut.model_validate(make_record(**overrides))


def _list_store() -> ListRecordStore:
    return ListRecordStore([_record(record_id=42), _record(record_id=43)])


def _detail_store() -> DetailRecordStore:
    return DetailRecordStore(42, _record(record_id=42, instructions=[make_instruction(901)]))


def _run(authority, store, body, subscription=None, presenter=None, on_session_expired=None):
    """Builds one view, runs body(orchestrator), lets background refreshes finish."""
    subscription = subscription or SubscriptionContext(status=SubscriptionStatus.ACTIVE)

    async def runner():
        orchestrator = build_orchestrator(authority, store, subscription, presenter, on_session_expired)
        try:
            result = await body(orchestrator)
            await orchestrator.reconciler.settle()
            return orchestrator, result
        finally:
            await orchestrator.executor.api_client.aclose()

    return asyncio.run(runner())


class StoreCheckingPresenter(CollectingPresenter):
    """Records whether the store already held the letter's instruction when it was presented."""

    def __init__(self, store):
        super().__init__()
        self.store = store
        self.instruction_was_stored = []

    async def present(self, document: PresentedDocument) -> None:
        record = self.store.get(42)
        self.instruction_was_stored.append(record.find_instruction(document.instruction_id) is not None)
        await super().present(document)


class TestAppliedWithLetter:
    def test_extend_patches_then_opens_the_letter(self, authority):
        authority.add("POST", f"{RECORD_PATH}/extend", json_body={
            "lg_record": make_record(expiry_date="2026-03-01T00:00:00", instructions=[make_instruction(901)]),
            "latest_instruction_id": 901,
        })
        authority.add("POST", MARK_PATH, json_body={"message": "ok"})
        store = _list_store()
        untouched = store.get(43)
        presenter = StoreCheckingPresenter(store)

        orchestrator, report = _run(
            authority, store,
            lambda o: o.run_record_action(ActionKind.EXTEND, 42, LGRecordExtend(new_expiry_date=date(2026, 3, 1))),
            presenter=presenter,
        )

        assert report.status == "applied"
        assert report.message == "LG LG-42 extended successfully!"
        assert report.latest_instruction_id == 901
        assert [d.instruction_id for d in report.documents] == [901]
        assert presenter.instruction_was_stored == [True]
        assert store.get(42).expiry_date.date() == date(2026, 3, 1)
        assert store.get(43) is untouched
        assert [(c.method, c.url.path) for c in authority.calls] == [
            ("POST", "/api/v1/end-user/lg-records/42/extend"),
            ("POST", "/api/v1/end-user/lg-records/instructions/901/mark-as-accessed-for-print"),
        ]
        assert [n.level for n in orchestrator.notifications.drain()] == ["success"]

    def test_letter_failure_keeps_the_applied_state(self, authority):
        authority.add("POST", f"{RECORD_PATH}/extend", json_body={
            "lg_record": make_record(expiry_date="2026-03-01T00:00:00", instructions=[make_instruction(901)]),
            "latest_instruction_id": 901,
        })
        authority.add("POST", MARK_PATH, status_code=500, json_body={"detail": "Letter storage unavailable."})
        store = _list_store()

        orchestrator, report = _run(
            authority, store,
            lambda o: o.run_record_action(ActionKind.EXTEND, 42, LGRecordExtend(extension_months=12)),
        )

        assert report.status == "applied"
        assert report.side_effect_error == "Could not open letter: Letter storage unavailable."
        assert report.documents == []
        assert store.get(42).expiry_date.date() == date(2026, 3, 1)
        levels = [n.level for n in orchestrator.notifications.drain()]
        assert levels == ["success", "error"]


class TestPending:
    def test_liquidation_queued_for_approval(self, authority):
        authority.add("POST", f"{RECORD_PATH}/liquidate", json_body={"approval_request_id": 77})
        store = _list_store()
        before = store.get(42)
        payload = LGRecordLiquidation(liquidation_type=LiquidationType.FULL, reason="Claimed in full by beneficiary.")

        orchestrator, report = _run(authority, store, lambda o: o.run_record_action(ActionKind.LIQUIDATE, 42, payload))

        assert report.status == "pending"
        assert report.approval_request_id == 77
        assert report.documents == []
        assert store.get(42) is before
        assert len(authority.calls) == 1
        (notice,) = orchestrator.notifications.drain()
        assert notice.level == "info"
        assert notice.message == "LG Liquidation request submitted for approval. Request ID: 77."


class TestRefusals:
    def test_grace_period_release_is_refused_without_network(self, authority):
        store = _list_store()
        before = store.all_records()

        orchestrator, report = _run(
            authority, store,
            lambda o: o.run_record_action(ActionKind.RELEASE, 42, LGRecordRelease(reason="Contract fulfilled by supplier.")),
            subscription=SubscriptionContext(status=SubscriptionStatus.GRACE),
        )

        assert report.status == "refused"
        assert report.message == GRACE_PERIOD_REFUSAL_MESSAGE
        assert authority.calls == []
        assert store.all_records() == before
        assert [n.level for n in orchestrator.notifications.drain()] == ["warning"]

    def test_read_only_view_is_refused(self, authority):
        store = ListRecordStore([_record(record_id=42)], read_only=True)

        _, report = _run(authority, store, lambda o: o.toggle_auto_renewal(42, False))

        assert report.status == "refused"
        assert authority.calls == []

    def test_action_not_offered_for_status(self, authority):
        store = ListRecordStore([_record(record_id=42, status="Expired")])

        _, report = _run(
            authority, store,
            lambda o: o.run_record_action(ActionKind.EXTEND, 42, LGRecordExtend(extension_months=12)),
        )

        assert report.status == "refused"
        assert "not available" in report.message
        assert authority.calls == []

    def test_invalid_payload_reports_field_errors(self, authority):
        _, report = _run(
            authority, _list_store(),
            lambda o: o.run_record_action(ActionKind.RELEASE, 42, LGRecordRelease(reason="short")),
        )

        assert report.status == "invalid"
        assert report.field_errors == {"reason": "Reason must be at least 10 characters long."}
        assert authority.calls == []

    def test_second_submission_is_refused_while_first_is_in_flight(self, authority):
        async def scenario(orchestrator):
            requested, release = asyncio.Event(), asyncio.Event()

            async def slow_extend(request):
                requested.set()
                await release.wait()
                return httpx.Response(200, json={"lg_record": make_record(expiry_date="2026-03-01T00:00:00")})

            authority.add("POST", f"{RECORD_PATH}/extend", handler=slow_extend)
            payload = LGRecordExtend(extension_months=12)

            first = asyncio.create_task(orchestrator.run_record_action(ActionKind.EXTEND, 42, payload))
            await requested.wait()
            in_flight = orchestrator.is_submitting(ActionKind.EXTEND, 42)
            second = await orchestrator.run_record_action(ActionKind.EXTEND, 42, payload)
            release.set()
            return in_flight, await first, second, orchestrator.is_submitting(ActionKind.EXTEND, 42)

        _, (in_flight, first, second, still_submitting) = _run(authority, _list_store(), scenario)

        assert in_flight is True
        assert first.status == "applied"
        assert second.status == "refused"
        assert second.message == SUBMISSION_IN_PROGRESS_MESSAGE
        assert len(authority.calls_to("POST", f"{RECORD_PATH}/extend")) == 1
        assert still_submitting is False


class TestFailures:
    def test_remote_error_is_reported_with_authority_message(self, authority):
        authority.add("POST", f"{RECORD_PATH}/extend", status_code=400, json_body={"detail": "New expiry date exceeds the maximum period."})
        store = _list_store()
        before = store.get(42)

        orchestrator, report = _run(
            authority, store,
            lambda o: o.run_record_action(ActionKind.EXTEND, 42, LGRecordExtend(extension_months=12)),
        )

        assert report.status == "failed"
        assert report.message == "Failed to extend LG: New expiry date exceeds the maximum period."
        assert store.get(42) is before

    def test_malformed_success_triggers_a_resync(self, authority):
        authority.add("POST", f"{RECORD_PATH}/extend", json_body={"message": "Extended."})
        authority.add("GET", LIST_PATH, json_body=[make_record(record_id=42, expiry_date="2026-03-01T00:00:00"), make_record(record_id=43)])
        store = _list_store()

        _, report = _run(
            authority, store,
            lambda o: o.run_record_action(ActionKind.EXTEND, 42, LGRecordExtend(extension_months=12)),
        )

        assert report.status == "failed"
        assert len(authority.calls_to("GET", LIST_PATH)) == 1
        assert store.get(42).expiry_date.year == 2026

    def test_toggle_failure_rolls_back_and_reports(self, authority):
        authority.fail_transport("POST", f"{RECORD_PATH}/toggle-auto-renewal")
        store = _list_store()

        _, report = _run(authority, store, lambda o: o.toggle_auto_renewal(42, False))

        assert report.status == "failed"
        assert report.message == "Failed to toggle auto-renewal: An unexpected error occurred."
        assert store.get(42).auto_renewal is True

    def test_expired_session_is_signalled(self, authority):
        authority.add("POST", f"{RECORD_PATH}/extend", status_code=401, json_body={"detail": "Could not validate credentials"})
        expired = []

        _, report = _run(
            authority, _list_store(),
            lambda o: o.run_record_action(ActionKind.EXTEND, 42, LGRecordExtend(extension_months=12)),
            on_session_expired=lambda: expired.append(True),
        )

        assert report.status == "failed"
        assert expired == [True]


class TestToggle:
    def test_confirmed_toggle_reports_new_value(self, authority):
        authority.add("POST", f"{RECORD_PATH}/toggle-auto-renewal", json_body={"lg_record": make_record(auto_renewal=False)})
        store = _list_store()

        _, report = _run(authority, store, lambda o: o.toggle_auto_renewal(42, False))

        assert report.status == "applied"
        assert report.message == "Auto-renewal for LG LG-42 turned OFF."
        assert store.get(42).auto_renewal is False


class TestOwnerChange:
    def test_summary_is_a_success_and_the_record_is_reread(self, authority):
        authority.add("POST", "/end-user/lg-records/change-owner", json_body={
            "message": "LG owner updated for 1 LGs.", "affected_lgs_count": 1, "affected_lg_numbers": ["LG-42"],
        })
        authority.add("GET", RECORD_PATH, json_body=make_record(record_id=42, owner_id=8))
        store = _list_store()

        orchestrator, report = _run(
            authority, store,
            lambda o: o.run_record_action(ActionKind.CHANGE_OWNER, 42, LGRecordChangeOwner(new_internal_owner_contact_id=8)),
        )

        assert report.status == "applied"
        assert report.message == "LG Owner for LG-42 changed successfully!"
        assert report.affected_lg_numbers == ["LG-42"]
        assert report.lg_record.internal_owner_contact.id == 8
        assert store.get(42).internal_owner_contact.id == 8
        assert len(authority.calls_to("GET", RECORD_PATH)) == 1
        assert [n.level for n in orchestrator.notifications.drain()] == ["success"]

    def test_failed_reread_keeps_the_success(self, authority):
        authority.add("POST", "/end-user/lg-records/change-owner", json_body={
            "message": "LG owner updated for 1 LGs.", "affected_lgs_count": 1, "affected_lg_numbers": ["LG-42"],
        })
        authority.fail_transport("GET", RECORD_PATH)

        _, report = _run(
            authority, _list_store(),
            lambda o: o.run_record_action(ActionKind.CHANGE_OWNER, 42, LGRecordChangeOwner(new_internal_owner_contact_id=8)),
        )

        assert report.status == "applied"
        assert report.refresh_error is not None

    def test_bulk_change_reports_affected_lgs_and_reloads(self, authority):
        authority.add("POST", "/end-user/lg-records/change-owner", json_body={
            "message": "LG owner updated for 2 LGs.", "affected_lgs_count": 2, "affected_lg_numbers": ["LG-42", "LG-43"],
        })
        authority.add("GET", LIST_PATH, json_body=[make_record(record_id=42, owner_id=8), make_record(record_id=43, owner_id=8)])
        store = _list_store()
        payload = LGRecordBulkChangeOwner(old_internal_owner_contact_id=7, new_internal_owner_contact_id=8, reason="Owner left.")

        orchestrator, report = _run(authority, store, lambda o: o.change_owner_for_all(payload))

        assert report.status == "applied"
        assert report.message == "Bulk LG Owner for 2 LGs changed successfully!"
        assert report.affected_lg_numbers == ["LG-42", "LG-43"]
        assert len(authority.calls_to("GET", LIST_PATH)) == 1
        assert {store.get(i).internal_owner_contact.id for i in (42, 43)} == {8}
        assert orchestrator.reconciler.is_refreshing is False

    def test_bulk_change_pending_approval(self, authority):
        authority.add("POST", "/end-user/lg-records/change-owner", json_body={"approval_request_id": 31})
        authority.add("GET", LIST_PATH, json_body=[make_record(record_id=42), make_record(record_id=43)])
        payload = LGRecordBulkChangeOwner(old_internal_owner_contact_id=7, new_internal_owner_contact_id=8, reason="Owner left.")

        _, report = _run(authority, _list_store(), lambda o: o.change_owner_for_all(payload))

        assert report.status == "pending"
        assert report.approval_request_id == 31
        assert report.message == "Bulk LG Owner change request submitted for approval. Request ID: 31."

    def test_bulk_change_is_refused_in_grace_period(self, authority):
        payload = LGRecordBulkChangeOwner(old_internal_owner_contact_id=7, new_internal_owner_contact_id=8, reason="Owner left.")

        _, report = _run(
            authority, _list_store(), lambda o: o.change_owner_for_all(payload),
            subscription=SubscriptionContext(status=SubscriptionStatus.GRACE),
        )

        assert report.status == "refused"
        assert report.message == GRACE_PERIOD_REFUSAL_MESSAGE
        assert authority.calls == []


class TestAmendAndActivate:
    def test_recently_expired_lg_can_be_amended(self, authority):
        expiry = (date.today() - timedelta(days=10)).isoformat() + "T00:00:00"
        authority.add("POST", f"{RECORD_PATH}/amend", json_body={
            "lg_record": make_record(status="Expired", expiry_date=expiry, lg_amount="90000.00"),
        })
        store = ListRecordStore([_record(record_id=42, status="Expired", expiry_date=expiry)])
        payload = LGRecordAmend(
            amendment_details={"lg_amount": "90000.00"},
            amendment_letter_file=DocumentUpload(file_name="amendment.pdf", content=b"%PDF-1.4", mime_type="application/pdf"),
        )

        _, report = _run(authority, store, lambda o: o.run_record_action(ActionKind.AMEND, 42, payload))

        assert report.status == "applied"
        assert report.message == "LG LG-42 amended successfully!"
        assert str(store.get(42).lg_amount) == "90000.00"

    def test_long_expired_lg_cannot_be_amended(self, authority):
        expiry = (date.today() - timedelta(days=60)).isoformat() + "T00:00:00"
        store = ListRecordStore([_record(record_id=42, status="Expired", expiry_date=expiry)])
        payload = LGRecordAmend(
            amendment_details={"lg_amount": "90000.00"},
            amendment_letter_file=DocumentUpload(file_name="amendment.pdf", content=b"%PDF-1.4", mime_type="application/pdf"),
        )

        _, report = _run(authority, store, lambda o: o.run_record_action(ActionKind.AMEND, 42, payload))

        assert report.status == "refused"
        assert authority.calls == []

    def test_activation_is_only_offered_for_non_operative_advance_payment_lgs(self, authority):
        store = _list_store()
        payload = LGActivateNonOperativeRequest(
            payment_method="Wire", currency_id=1, amount="250000.00", payment_reference="FT-2024-0091",
            issuing_bank_id=4, payment_date=date(2024, 4, 30),
        )

        _, report = _run(authority, store, lambda o: o.run_record_action(ActionKind.ACTIVATE_NON_OPERATIVE, 42, payload))

        assert report.status == "refused"
        assert authority.calls == []

    def test_non_operative_advance_payment_lg_is_activated(self, authority):
        non_operative = {
            "lg_type": {"id": 3, "name": "Advance Payment LG"},
            "lg_operational_status": {"id": 2, "name": "Non-Operative"},
        }
        authority.add("POST", f"{RECORD_PATH}/activate-non-operative", json_body={
            "lg_record": make_record(lg_operational_status={"id": 1, "name": "Operative"}, lg_type={"id": 3, "name": "Advance Payment LG"}),
        })
        store = ListRecordStore([_record(record_id=42, **non_operative)])
        payload = LGActivateNonOperativeRequest(
            payment_method="Wire", currency_id=1, amount="250000.00", payment_reference="FT-2024-0091",
            issuing_bank_id=4, payment_date=date(2024, 4, 30),
        )

        _, report = _run(authority, store, lambda o: o.run_record_action(ActionKind.ACTIVATE_NON_OPERATIVE, 42, payload))

        assert report.status == "applied"
        assert report.message == "LG LG-42 activated successfully!"
        assert store.get(42).lg_operational_status.name == "Operative"


class TestDetailView:
    def test_applied_without_letter_reloads_the_record(self, authority):
        authority.add("POST", f"{RECORD_PATH}/release", json_body={"lg_record": make_record(status="Released")})
        authority.add("GET", RECORD_PATH, json_body=make_record(status="Released", lg_period_months=12))
        store = _detail_store()

        _, report = _run(
            authority, store,
            lambda o: o.run_record_action(ActionKind.RELEASE, 42, LGRecordRelease(reason="Contract fulfilled by supplier.")),
        )

        assert report.status == "applied"
        assert len(authority.calls_to("GET", RECORD_PATH)) == 1
        assert store.get(42).status_name == "Released"

    def test_delivery_refreshes_the_owning_record(self, authority):
        authority.add("POST", "/end-user/lg-records/instructions/901/record-delivery", json_body={"message": "Delivery recorded."})
        authority.add("GET", RECORD_PATH, json_body=make_record(instructions=[
            make_instruction(901, delivery_date="2024-05-02T00:00:00"),
        ]))
        store = _detail_store()

        _, report = _run(
            authority, store,
            lambda o: o.run_instruction_action(
                ActionKind.RECORD_DELIVERY, 901, LGInstructionRecordDelivery(delivery_date=date(2024, 5, 2)),
            ),
        )

        assert report.status == "applied"
        assert report.message == "Delivery recorded successfully for Instruction EXT-0901!"
        assert report.refresh_error is None
        assert store.get(42).find_instruction(901).delivery_date is not None

    def test_refresh_failure_is_reported_separately(self, authority):
        authority.add("POST", "/end-user/lg-records/instructions/901/record-delivery", json_body={"message": "Delivery recorded."})
        authority.add("GET", RECORD_PATH, status_code=503, json_body={"detail": "Try again later."})

        orchestrator, report = _run(
            authority, _detail_store(),
            lambda o: o.run_instruction_action(
                ActionKind.RECORD_DELIVERY, 901, LGInstructionRecordDelivery(delivery_date=date(2024, 5, 2)),
            ),
        )

        assert report.status == "applied"
        assert report.refresh_error == "Try again later."
        assert [n.level for n in orchestrator.notifications.drain()] == ["success", "warning"]

    def test_reminder_html_is_presented_inline(self, authority):
        authority.add(
            "POST", "/end-user/lg-records/instructions/901/send-reminder-to-bank",
            text="<html><body>Reminder</body></html>", headers={"content-type": "text/html"},
        )
        authority.add("GET", RECORD_PATH, json_body=make_record(instructions=[make_instruction(901)]))

        _, report = _run(authority, _detail_store(), lambda o: o.run_instruction_action(ActionKind.SEND_REMINDER, 901))

        assert report.status == "applied"
        assert [d.kind for d in report.documents] == ["inline_html"]
        assert authority.calls_to("POST", MARK_PATH) == []

    def test_unknown_instruction_is_invalid(self, authority):
        _, report = _run(authority, _detail_store(), lambda o: o.run_instruction_action(ActionKind.SEND_REMINDER, 999))

        assert report.status == "invalid"
        assert authority.calls == []

    def test_viewing_a_letter_is_allowed_in_grace_period(self, authority):
        authority.add("POST", MARK_PATH, json_body={"message": "ok"})

        _, document = _run(
            authority, _detail_store(), lambda o: o.view_letter(901),
            subscription=SubscriptionContext(status=SubscriptionStatus.GRACE),
        )

        assert document.title == "Letter for LG LG-42"

    def test_latest_letter_is_found_without_an_id(self, authority):
        authority.add("POST", "/end-user/lg-records/instructions/907/mark-as-accessed-for-print", json_body={"message": "ok"})
        store = DetailRecordStore(42, _record(record_id=42, instructions=[
            make_instruction(901, created_at="2024-04-01T10:00:00"),
            make_instruction(907, created_at="2024-05-01T10:00:00"),
        ]))

        _, document = _run(authority, store, lambda o: o.view_latest_letter(42))

        assert document.instruction_id == 907

    def test_record_without_instructions_has_no_letter(self, authority):
        orchestrator, document = _run(authority, _list_store(), lambda o: o.view_latest_letter(42))

        assert document is None
        assert "No generated letter found" in orchestrator.notifications.drain()[0].message
        assert authority.calls == []


class TestActionCenter:
    def test_bulk_renewal_presents_pdf_and_resyncs(self, authority):
        authority.add("POST", "/end-user/lg-records/run-auto-renewal", json_body={
            "renewed_count": 2, "message": "Renewed 2 LGs.", "combined_pdf_base64": "JVBERi0=",
        })
        for section in ActionCenterStore.SECTIONS:
            authority.add("GET", f"/end-user/action-center/{section}", json_body=[])

        orchestrator, report = _run(authority, ActionCenterStore(), lambda o: o.run_bulk_renewal())

        assert report.status == "applied"
        assert [d.kind for d in report.documents] == ["inline_pdf"]
        assert len(authority.calls_to("GET", "/end-user/action-center/lg-for-renewal")) == 1
        assert orchestrator.reconciler.is_refreshing is False
