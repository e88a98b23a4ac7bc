# lg_console/services/reconciler.py
"""
Keeps a view's cached LG records consistent with the authority.

Records are patched by id: Applied outcomes replace the record, Pending outcomes
leave it alone unless a provisional snapshot was supplied. Auto-renewal toggles
are applied optimistically and either confirmed or rolled back. Full reloads
replace the collection but keep any record patched after the reload started.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from pydantic import ValidationError as PydanticValidationError

from lg_console.core.exceptions import LGConsoleError, MalformedResponseError
from lg_console.schemas.all_schemas import (
    ActionOutcome,
    ActionCenterOut,
    Applied,
    LGInstructionOut,
    LGRecordOut,
    RecordCollectionOut,
)
from lg_console.services.api_client import LGApiClient

logger = logging.getLogger(__name__)


def _validate_record(raw: Any) -> LGRecordOut:
    try:
        return LGRecordOut.model_validate(raw)
    except PydanticValidationError as e:
        raise MalformedResponseError("The server returned an LG record in an unexpected format.") from e


def _validate_records(raw: Any) -> List[LGRecordOut]:
    if not isinstance(raw, list):
        raise MalformedResponseError("The server returned an unexpected list of LG records.")
    return [_validate_record(item) for item in raw]


def _validate_instructions(raw: Any) -> List[LGInstructionOut]:
    if not isinstance(raw, list):
        raise MalformedResponseError("The server returned an unexpected list of instructions.")
    try:
        return [LGInstructionOut.model_validate(item) for item in raw]
    except PydanticValidationError as e:
        raise MalformedResponseError("The server returned an instruction in an unexpected format.") from e


# --- Record store strategies, one per view ---

class RecordStore(ABC):
    """Where a view keeps its records. Views differ only in this strategy."""

    # Reload the view after an Applied outcome that produced no letter to open
    refresh_after_applied_without_letter = False
    # Reload the view after every successful action
    refresh_after_every_action = False
    # Skip marking letters as accessed (corporate admin read-only pages)
    read_only = False

    @abstractmethod
    def get(self, record_id: int) -> Optional[LGRecordOut]:
        ...

    @abstractmethod
    def put(self, record: LGRecordOut) -> bool:
        """Replaces the record with the same id. Returns False when the view does not hold it."""

    @abstractmethod
    def all_records(self) -> List[LGRecordOut]:
        ...

    @abstractmethod
    async def fetch(self, api_client: LGApiClient) -> Any:
        """Loads a fresh snapshot from the authority."""

    @abstractmethod
    def replace_all(self, snapshot: Any, preserved: Dict[int, LGRecordOut]) -> None:
        """Installs a fetched snapshot, keeping the preserved records in place of their fetched copies."""

    def find_instruction(self, instruction_id: int) -> Tuple[Optional[LGRecordOut], Optional[LGInstructionOut]]:
        for record in self.all_records():
            instruction = record.find_instruction(instruction_id)
            if instruction is not None:
                return record, instruction
        return None, None


class ListRecordStore(RecordStore):
    """The LG record list. Order is kept; records not in the list are never added by a patch."""

    def __init__(self, records: Optional[List[LGRecordOut]] = None, read_only: bool = False):
        self._records: List[LGRecordOut] = list(records or [])
        self.read_only = read_only

    def get(self, record_id: int) -> Optional[LGRecordOut]:
        for record in self._records:
            if record.id == record_id:
                return record
        return None

    def put(self, record: LGRecordOut) -> bool:
        for index, existing in enumerate(self._records):
            if existing.id == record.id:
                self._records[index] = record
                return True
        return False

    def all_records(self) -> List[LGRecordOut]:
        return list(self._records)

    async def fetch(self, api_client: LGApiClient) -> List[LGRecordOut]:
        return _validate_records(await api_client.list_lg_records())

    def replace_all(self, snapshot: List[LGRecordOut], preserved: Dict[int, LGRecordOut]) -> None:
        self._records = [preserved.get(record.id, record) for record in snapshot]


class DetailRecordStore(RecordStore):
    """A single LG record page."""

    refresh_after_applied_without_letter = True

    def __init__(self, record_id: int, record: Optional[LGRecordOut] = None, read_only: bool = False):
        self.record_id = record_id
        self._record = record
        self.read_only = read_only

    def get(self, record_id: int) -> Optional[LGRecordOut]:
        if record_id == self.record_id:
            return self._record
        return None

    def put(self, record: LGRecordOut) -> bool:
        if record.id != self.record_id:
            return False
        self._record = record
        return True

    def all_records(self) -> List[LGRecordOut]:
        return [self._record] if self._record is not None else []

    async def fetch(self, api_client: LGApiClient) -> LGRecordOut:
        return _validate_record(await api_client.get_lg_record(self.record_id))

    def replace_all(self, snapshot: LGRecordOut, preserved: Dict[int, LGRecordOut]) -> None:
        self._record = preserved.get(snapshot.id, snapshot)


class ActionCenterStore(RecordStore):
    """The action center: LGs due for renewal plus instruction task lists."""

    refresh_after_every_action = True

    SECTIONS = (
        "lg-for-renewal",
        "instructions-undelivered",
        "instructions-awaiting-reply",
        "approved-requests-pending-print",
    )

    def __init__(self):
        self.lg_for_renewal: List[LGRecordOut] = []
        self.instructions_undelivered: List[LGInstructionOut] = []
        self.instructions_awaiting_reply: List[LGInstructionOut] = []
        self.approved_requests_pending_print: List[Dict[str, Any]] = []

    def get(self, record_id: int) -> Optional[LGRecordOut]:
        for record in self.lg_for_renewal:
            if record.id == record_id:
                return record
        return None

    def put(self, record: LGRecordOut) -> bool:
        for index, existing in enumerate(self.lg_for_renewal):
            if existing.id == record.id:
                self.lg_for_renewal[index] = record
                return True
        return False

    def all_records(self) -> List[LGRecordOut]:
        return list(self.lg_for_renewal)

    def find_instruction(self, instruction_id: int) -> Tuple[Optional[LGRecordOut], Optional[LGInstructionOut]]:
        record, instruction = super().find_instruction(instruction_id)
        if instruction is not None:
            return record, instruction
        for candidate in self.instructions_undelivered + self.instructions_awaiting_reply:
            if candidate.id == instruction_id:
                owner = self.get(candidate.lg_record_id) if candidate.lg_record_id is not None else None
                return owner, candidate
        return None, None

    async def fetch(self, api_client: LGApiClient) -> Dict[str, Any]:
        renewal, undelivered, awaiting_reply, pending_print = await asyncio.gather(
            *(api_client.get_action_center_section(section) for section in self.SECTIONS)
        )
        if not isinstance(pending_print, list):
            raise MalformedResponseError("The server returned an unexpected list of approved requests.")
        return {
            "lg_for_renewal": _validate_records(renewal),
            "instructions_undelivered": _validate_instructions(undelivered),
            "instructions_awaiting_reply": _validate_instructions(awaiting_reply),
            "approved_requests_pending_print": pending_print,
        }

    def replace_all(self, snapshot: Dict[str, Any], preserved: Dict[int, LGRecordOut]) -> None:
        self.lg_for_renewal = [preserved.get(record.id, record) for record in snapshot["lg_for_renewal"]]
        self.instructions_undelivered = snapshot["instructions_undelivered"]
        self.instructions_awaiting_reply = snapshot["instructions_awaiting_reply"]
        self.approved_requests_pending_print = snapshot["approved_requests_pending_print"]


# --- Reconciliation ---

class CommitReceipt:
    """Settles once the reconciler has stored (or discarded) the result of an action."""

    def __init__(self, record_id: Optional[int]):
        self.record_id = record_id
        self.record: Optional[LGRecordOut] = None
        self.committed = False
        self._settled = asyncio.Event()

    def commit(self, record: Optional[LGRecordOut]) -> None:
        self.record = record
        self.committed = True
        self._settled.set()

    def discard(self) -> None:
        self._settled.set()

    async def wait(self) -> bool:
        await self._settled.wait()
        return self.committed


class StateReconciler:
    def __init__(self, store: RecordStore, api_client: LGApiClient):
        self.store = store
        self.api_client = api_client
        self.load_error: Optional[str] = None
        self._patch_clock = 0
        self._patched_at: Dict[int, int] = {}
        self._background_tasks: Set[asyncio.Task] = set()
        # Counted, since reloads of either kind may overlap
        self._initial_loads = 0
        self._refreshes = 0

    @property
    def is_initial_loading(self) -> bool:
        return self._initial_loads > 0

    @property
    def is_refreshing(self) -> bool:
        return self._refreshes > 0

    @property
    def has_background_work(self) -> bool:
        return bool(self._background_tasks) or self._initial_loads > 0 or self._refreshes > 0

    def _patch(self, record: LGRecordOut) -> bool:
        stored = self.store.put(record)
        self._patch_clock += 1
        self._patched_at[record.id] = self._patch_clock
        return stored

    # --- Confirm-after-response ---

    def apply_outcome(self, outcome: ActionOutcome) -> CommitReceipt:
        if isinstance(outcome, Applied):
            receipt = CommitReceipt(outcome.lg_record.id)
            stored = self._patch(outcome.lg_record)
            logger.debug(f"Applied record {outcome.lg_record.id} (held by view: {stored}).")
            receipt.commit(outcome.lg_record)
            return receipt

        provisional = outcome.provisional_record
        receipt = CommitReceipt(provisional.id if provisional else None)
        if provisional is not None:
            self._patch(provisional)
            logger.debug(f"Stored provisional snapshot of record {provisional.id} for approval request {outcome.approval_request_id}.")
        receipt.commit(provisional)
        return receipt

    # --- Optimistic toggle ---

    async def toggle_auto_renewal(
        self,
        record_id: int,
        new_value: bool,
        submit: Callable[[], Awaitable[ActionOutcome]],
    ) -> ActionOutcome:
        """
        Shows the new auto_renewal value at once, then confirms it with the authority's copy
        or restores the record exactly as it was.
        """
        current = self.store.get(record_id)
        snapshot = current.model_copy(deep=True) if current is not None else None
        optimistic = None
        if current is not None:
            optimistic = current.model_copy(update={"auto_renewal": new_value})
            self._patch(optimistic)

        try:
            outcome = await submit()
        except BaseException:
            self._rollback(record_id, snapshot, optimistic)
            raise

        if isinstance(outcome, Applied):
            self._patch(outcome.lg_record)
        else:
            # Queued for approval: nothing changed yet on the authority
            self._rollback(record_id, snapshot, optimistic)
            if outcome.provisional_record is not None:
                self._patch(outcome.provisional_record)
        return outcome

    def _rollback(self, record_id: int, snapshot: Optional[LGRecordOut], optimistic: Optional[LGRecordOut]) -> None:
        if snapshot is None:
            return
        if self.store.get(record_id) is optimistic:
            self._patch(snapshot)
            logger.info(f"Rolled back auto-renewal of record {record_id} to {snapshot.auto_renewal}.")
        else:
            # A newer authoritative copy already replaced the optimistic one
            logger.info(f"Record {record_id} was refreshed during the toggle; keeping the newer copy.")

    # --- Reloads ---

    async def reload(self, background: bool = False) -> None:
        """Full reload. A background reload only raises is_refreshing."""
        if background:
            self._refreshes += 1
        else:
            self._initial_loads += 1
        started_at = self._patch_clock
        try:
            snapshot = await self.store.fetch(self.api_client)
            preserved: Dict[int, LGRecordOut] = {}
            for record_id, patched_at in self._patched_at.items():
                if patched_at > started_at:
                    record = self.store.get(record_id)
                    if record is not None:
                        preserved[record_id] = record
            self.store.replace_all(snapshot, preserved)
            self.load_error = None
        except LGConsoleError as e:
            self.load_error = e.message
            logger.error(f"Failed to load records: {e.message}")
            raise
        finally:
            if background:
                self._refreshes -= 1
            else:
                self._initial_loads -= 1

    def schedule_background_refresh(self) -> asyncio.Task:
        # Counted from scheduling so the view shows the refresh before the task first runs
        self._refreshes += 1
        task = asyncio.create_task(self._background_reload())
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def _background_reload(self) -> None:
        try:
            await self.reload(background=True)
        except LGConsoleError as e:
            # Surfaced through load_error; the view keeps showing its current records
            logger.warning(f"Background refresh failed: {e.message}")
        finally:
            self._refreshes -= 1

    async def settle(self) -> None:
        """Waits for any background refresh still running."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks))

    async def refresh_record(self, record_id: int) -> LGRecordOut:
        """Re-reads one record and merges it by id."""
        record = _validate_record(await self.api_client.get_lg_record(record_id))
        self._patch(record)
        return record

    async def lookup(self, record_id: int) -> LGRecordOut:
        record = self.store.get(record_id)
        if record is not None:
            return record
        return _validate_record(await self.api_client.get_lg_record(record_id))

    # --- View state ---

    def collection_state(self) -> RecordCollectionOut:
        return RecordCollectionOut(
            records=self.store.all_records(),
            is_initial_loading=self.is_initial_loading,
            is_refreshing=self.is_refreshing,
            load_error=self.load_error,
        )

    def action_center_state(self) -> ActionCenterOut:
        store = self.store
        if not isinstance(store, ActionCenterStore):
            raise TypeError("action_center_state requires an ActionCenterStore.")
        return ActionCenterOut(
            lg_for_renewal=store.lg_for_renewal,
            instructions_undelivered=store.instructions_undelivered,
            instructions_awaiting_reply=store.instructions_awaiting_reply,
            approved_requests_pending_print=store.approved_requests_pending_print,
            is_initial_loading=self.is_initial_loading,
            is_refreshing=self.is_refreshing,
            load_error=self.load_error,
        )
