"""
Shared fixtures: a scripted LG authority behind httpx.MockTransport and record builders.
"""
import json
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import pytest

from lg_console.constants import SubscriptionStatus
from lg_console.core.security import SubscriptionContext
from lg_console.services.action_executor import ActionExecutor
from lg_console.services.api_client import LGApiClient
from lg_console.services.notifications import NotificationCenter
from lg_console.services.orchestrator import ActionOrchestrator
from lg_console.services.reconciler import RecordStore, StateReconciler
from lg_console.services.side_effects import CollectingPresenter, LetterSequencer

AUTHORITY_BASE_URL = "http://authority.test/api/v1"
API_PREFIX = "/api/v1"


class FakeAuthority:
    """Answers requests from scripted routes and records every request it receives."""

    def __init__(self):
        self.routes: Dict[Tuple[str, str], Callable[[httpx.Request], httpx.Response]] = {}
        self.calls: List[httpx.Request] = []

    def add(
        self,
        method: str,
        path: str,
        status_code: int = 200,
        json_body: Any = None,
        text: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        handler: Optional[Callable[[httpx.Request], httpx.Response]] = None,
    ) -> None:
        if handler is None:
            def handler(request: httpx.Request) -> httpx.Response:
                if text is not None:
                    return httpx.Response(status_code, text=text, headers=headers)
                return httpx.Response(status_code, json=json_body, headers=headers)
        self.routes[(method.upper(), API_PREFIX + path)] = handler

    def fail_transport(self, method: str, path: str) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)
        self.routes[(method.upper(), API_PREFIX + path)] = handler

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"detail": "Not Found"})
        return handler(request)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def client(self, token: str = "test-token") -> LGApiClient:
        return LGApiClient(token=token, base_url=AUTHORITY_BASE_URL, read_retry_attempts=1, transport=self.transport())

    def calls_to(self, method: str, path: str) -> List[httpx.Request]:
        return [c for c in self.calls if c.method == method.upper() and c.url.path == API_PREFIX + path]

    @staticmethod
    def json_of(request: httpx.Request) -> Any:
        return json.loads(request.content.decode())


def make_instruction(
    instruction_id: int,
    created_at: str = "2024-05-01T10:00:00",
    instruction_type: str = "LG_EXTENSION",
    status: str = "Instruction Issued",
    lg_record_id: int = 42,
    delivery_date: Optional[str] = None,
    bank_reply_date: Optional[str] = None,
    serial_number: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "id": instruction_id,
        "lg_record_id": lg_record_id,
        "serial_number": serial_number or f"EXT-{instruction_id:04d}",
        "instruction_type": instruction_type,
        "status": status,
        "instruction_date": created_at,
        "created_at": created_at,
        "delivery_date": delivery_date,
        "bank_reply_date": bank_reply_date,
        "documents": [],
    }


def make_record(
    record_id: int = 42,
    status: str = "Valid",
    auto_renewal: bool = True,
    lg_amount: str = "100000.00",
    expiry_date: str = "2025-03-01T00:00:00",
    owner_id: int = 7,
    instructions: Optional[List[Dict[str, Any]]] = None,
    **extra: Any,
) -> Dict[str, Any]:
    record = {
        "id": record_id,
        "lg_number": f"LG-{record_id}",
        "lg_amount": lg_amount,
        "lg_currency": {"id": 1, "iso_code": "EGP"},
        "lg_status": {"id": 1, "name": status},
        "expiry_date": expiry_date,
        "auto_renewal": auto_renewal,
        "lg_period_months": 12,
        "internal_owner_contact": {"id": owner_id, "email": "owner@example.com"},
        "instructions": instructions or [],
    }
    record.update(extra)
    return record


@pytest.fixture
def authority() -> FakeAuthority:
    return FakeAuthority()


@pytest.fixture
def subscription() -> SubscriptionContext:
    return SubscriptionContext(status=SubscriptionStatus.ACTIVE)


def build_orchestrator(
    authority: FakeAuthority,
    store: RecordStore,
    subscription: SubscriptionContext,
    presenter: Optional[CollectingPresenter] = None,
    on_session_expired: Optional[Callable[[], None]] = None,
) -> ActionOrchestrator:
    """Wires one view. Must be called inside the running event loop."""
    api_client = authority.client()
    presenter = presenter or CollectingPresenter()
    return ActionOrchestrator(
        executor=ActionExecutor(api_client, lambda: subscription),
        reconciler=StateReconciler(store, api_client),
        sequencer=LetterSequencer(api_client, presenter, read_only=store.read_only),
        notifications=NotificationCenter(),
        on_session_expired=on_session_expired,
    )
