# lg_console/services/side_effects.py
"""
Opens generated documents after an action has been reconciled.

A letter is only requested once the reconciler's commit receipt has settled, and
a failure here never undoes the action that produced the letter.
"""
import logging
from typing import List, Optional, Protocol

from lg_console.constants import MISSING_LETTER_MESSAGE
from lg_console.core.exceptions import RemoteError, SideEffectError
from lg_console.schemas.all_schemas import LGRecordOut, PresentedDocument
from lg_console.services.api_client import LGApiClient
from lg_console.services.reconciler import CommitReceipt

logger = logging.getLogger(__name__)


class DocumentPresenter(Protocol):
    async def present(self, document: PresentedDocument) -> None:
        ...


class CollectingPresenter:
    """Keeps presented documents so the HTTP surface can hand them to the browser."""

    def __init__(self):
        self.documents: List[PresentedDocument] = []

    async def present(self, document: PresentedDocument) -> None:
        self.documents.append(document)

    def drain(self) -> List[PresentedDocument]:
        documents, self.documents = self.documents, []
        return documents


class LetterSequencer:
    def __init__(self, api_client: LGApiClient, presenter: DocumentPresenter, read_only: bool = False):
        self.api_client = api_client
        self.presenter = presenter
        # Read-only views open letters without marking them as accessed for print
        self.read_only = read_only

    async def open_letter(
        self,
        instruction_id: Optional[int],
        receipt: Optional[CommitReceipt] = None,
        lg_number: Optional[str] = None,
    ) -> PresentedDocument:
        """Marks the instruction as accessed for print, then presents its letter."""
        if receipt is not None:
            committed = await receipt.wait()
            if not committed:
                raise SideEffectError("The action was not committed; the letter was not opened.", instruction_id)
            record = receipt.record
            if record is not None and record.instructions and record.find_instruction(instruction_id) is None:
                logger.warning(f"Record {record.id} does not list instruction {instruction_id}; opening it anyway.")

        if not instruction_id:
            raise SideEffectError(MISSING_LETTER_MESSAGE)

        if not self.read_only:
            try:
                await self.api_client.mark_instruction_accessed_for_print(instruction_id)
            except RemoteError as e:
                logger.error(f"Failed to mark instruction {instruction_id} as accessed for print: {e.message}")
                raise SideEffectError(f"Could not open letter: {e.message}", instruction_id) from e

        document = PresentedDocument(
            kind="letter_url",
            title=f"Letter for LG {lg_number or 'N/A'}",
            url=self.api_client.letter_url(instruction_id),
            instruction_id=instruction_id,
        )
        await self._present(document)
        logger.info(f"Opened letter for instruction {instruction_id}.")
        return document

    async def open_latest_letter(self, lg_record: LGRecordOut) -> PresentedDocument:
        latest = lg_record.latest_instruction()
        if latest is None:
            raise SideEffectError(MISSING_LETTER_MESSAGE)
        return await self.open_letter(latest.id, lg_number=lg_record.lg_number)

    async def present_pdf(self, content_base64: str, title: str) -> PresentedDocument:
        document = PresentedDocument(kind="inline_pdf", title=title, content_base64=content_base64)
        await self._present(document)
        return document

    async def present_html(self, html: str, title: str, instruction_id: Optional[int] = None) -> PresentedDocument:
        document = PresentedDocument(kind="inline_html", title=title, html=html, instruction_id=instruction_id)
        await self._present(document)
        return document

    async def _present(self, document: PresentedDocument) -> None:
        try:
            await self.presenter.present(document)
        except SideEffectError:
            raise
        except Exception as e:
            logger.error(f"Presenting '{document.title}' failed: {e}", exc_info=True)
            raise SideEffectError(f"Could not open {document.title.lower()}: {e}", document.instruction_id) from e
