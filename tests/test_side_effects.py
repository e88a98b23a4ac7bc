"""
Tests for letter sequencing after a committed action.
"""
import asyncio
from typing import List

import httpx
import pytest

from lg_console.core.exceptions import SideEffectError
from lg_console.schemas.all_schemas import LGRecordOut, PresentedDocument
from lg_console.services.reconciler import CommitReceipt
from lg_console.services.side_effects import CollectingPresenter, LetterSequencer

from conftest import AUTHORITY_BASE_URL, make_instruction, make_record

MARK_PATH = "/end-user/lg-records/instructions/901/mark-as-accessed-for-print"


class RecordingPresenter:
    def __init__(self, events: List[str]):
        self.events = events

    async def present(self, document: PresentedDocument) -> None:
        self.events.append(f"present:{document.instruction_id}")


class BrokenPresenter:
    async def present(self, document: PresentedDocument) -> None:
        raise RuntimeError("pop-up blocked")


def _open(authority, presenter, instruction_id=901, read_only=False, receipt_factory=None):
    async def scenario():
        api_client = authority.client()
        sequencer = LetterSequencer(api_client, presenter, read_only=read_only)
        receipt = receipt_factory() if receipt_factory else None
        try:
            return await sequencer.open_letter(instruction_id, receipt=receipt, lg_number="LG-42")
        finally:
            await api_client.aclose()

    return asyncio.run(scenario())


class TestOpenLetter:
    def test_marks_before_presenting(self, authority):
        events: List[str] = []

        def mark(request):
            events.append("mark:901")
            return httpx.Response(200, json={"message": "Instruction marked as accessed for print."})

        authority.add("POST", MARK_PATH, handler=mark)

        document = _open(authority, RecordingPresenter(events))

        assert events == ["mark:901", "present:901"]
        assert document.kind == "letter_url"
        assert document.title == "Letter for LG LG-42"
        assert document.url == (
            f"{AUTHORITY_BASE_URL}/end-user/lg-records/instructions/901/view-letter?token=test-token&print=true"
        )

    def test_read_only_view_skips_marking(self, authority):
        presenter = CollectingPresenter()

        _open(authority, presenter, read_only=True)

        assert authority.calls == []
        assert [d.instruction_id for d in presenter.documents] == [901]

    def test_mark_failure_means_nothing_is_presented(self, authority):
        authority.add("POST", MARK_PATH, status_code=404, json_body={"detail": "Instruction not found."})
        presenter = CollectingPresenter()

        with pytest.raises(SideEffectError) as exc_info:
            _open(authority, presenter)

        assert exc_info.value.message == "Could not open letter: Instruction not found."
        assert exc_info.value.instruction_id == 901
        assert presenter.documents == []

    def test_missing_instruction_id_is_reported(self, authority):
        with pytest.raises(SideEffectError) as exc_info:
            _open(authority, CollectingPresenter(), instruction_id=None)

        assert "No generated letter found" in exc_info.value.message
        assert authority.calls == []

    def test_presenter_failure_becomes_side_effect_error(self, authority):
        authority.add("POST", MARK_PATH, json_body={"message": "ok"})

        with pytest.raises(SideEffectError) as exc_info:
            _open(authority, BrokenPresenter())

        assert "pop-up blocked" in exc_info.value.message


class TestCommitOrdering:
    def test_waits_for_the_receipt_before_marking(self, authority):
        authority.add("POST", MARK_PATH, json_body={"message": "ok"})
        presenter = CollectingPresenter()
        record = LGRecordOut.model_validate(make_record(instructions=[make_instruction(901)]))

        async def scenario():
            api_client = authority.client()
            sequencer = LetterSequencer(api_client, presenter)
            receipt = CommitReceipt(42)
            opening = asyncio.create_task(sequencer.open_letter(901, receipt=receipt, lg_number="LG-42"))
            await asyncio.sleep(0.01)
            calls_before_commit = len(authority.calls)
            receipt.commit(record)
            await opening
            await api_client.aclose()
            return calls_before_commit

        assert asyncio.run(scenario()) == 0
        assert len(authority.calls) == 1
        assert len(presenter.documents) == 1

    def test_discarded_receipt_opens_nothing(self, authority):
        def discarded():
            receipt = CommitReceipt(42)
            receipt.discard()
            return receipt

        with pytest.raises(SideEffectError):
            _open(authority, CollectingPresenter(), receipt_factory=discarded)

        assert authority.calls == []


class TestInlineDocuments:
    def test_pdf_and_html_are_presented_inline(self, authority):
        presenter = CollectingPresenter()

        async def scenario():
            api_client = authority.client()
            sequencer = LetterSequencer(api_client, presenter)
            await sequencer.present_pdf("JVBERi0=", "Bank reminders")
            await sequencer.present_html("<html></html>", "Bank reminder for EXT-0901", 901)
            await api_client.aclose()

        asyncio.run(scenario())

        kinds = [d.kind for d in presenter.drain()]
        assert kinds == ["inline_pdf", "inline_html"]
        assert presenter.documents == []
        assert authority.calls == []
