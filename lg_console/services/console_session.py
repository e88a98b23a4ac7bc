# lg_console/services/console_session.py
import logging
import time
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from lg_console.config import get_settings
from lg_console.core.security import SessionToken, SubscriptionContext
from lg_console.services.action_executor import ActionExecutor
from lg_console.services.api_client import LGApiClient
from lg_console.services.notifications import NotificationCenter
from lg_console.services.orchestrator import ActionOrchestrator
from lg_console.services.reconciler import (
    ActionCenterStore,
    DetailRecordStore,
    ListRecordStore,
    RecordStore,
    StateReconciler,
)
from lg_console.services.side_effects import CollectingPresenter, LetterSequencer

logger = logging.getLogger(__name__)

ApiClientFactory = Callable[[str], LGApiClient]

DETAIL_VIEW_PREFIX = "detail:"


class ConsoleSession:
    """
    Everything one signed-in user works with: a single executor shared by all views,
    and one reconciler per view (list, detail pages, action center).
    Detail views are kept most-recently-used last and the oldest idle one is dropped past max_detail_views.
    """

    def __init__(
        self,
        token: str,
        subscription: SubscriptionContext,
        api_client: LGApiClient,
        expires_at: Optional[datetime] = None,
        max_detail_views: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.token = token
        self.subscription = subscription
        self.api_client = api_client
        self.expires_at = expires_at
        self.notifications = NotificationCenter()
        self.presenter = CollectingPresenter()
        self.executor = ActionExecutor(api_client, lambda: self.subscription)
        self.expired = False
        self.max_detail_views = max_detail_views or get_settings().max_detail_views
        self._clock = clock
        self.last_seen = clock()
        self._views: "OrderedDict[str, ActionOrchestrator]" = OrderedDict()

    def _mark_expired(self) -> None:
        self.expired = True

    def touch(self) -> None:
        self.last_seen = self._clock()

    def is_idle(self, now: float, idle_seconds: float) -> bool:
        return now - self.last_seen >= idle_seconds

    def token_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or datetime.now(timezone.utc)) >= self.expires_at

    def _view(self, key: str, store_factory: Callable[[], RecordStore]) -> ActionOrchestrator:
        view = self._views.get(key)
        if view is None:
            store = store_factory()
            view = ActionOrchestrator(
                executor=self.executor,
                reconciler=StateReconciler(store, self.api_client),
                sequencer=LetterSequencer(self.api_client, self.presenter, read_only=store.read_only),
                notifications=self.notifications,
                on_session_expired=self._mark_expired,
            )
            self._views[key] = view
            if key.startswith(DETAIL_VIEW_PREFIX):
                self._evict_detail_views(keep=key)
        else:
            self._views.move_to_end(key)
        return view

    def _evict_detail_views(self, keep: str) -> None:
        detail_keys = [key for key in self._views if key.startswith(DETAIL_VIEW_PREFIX)]
        excess = len(detail_keys) - self.max_detail_views
        for key in detail_keys:
            if excess <= 0:
                break
            view = self._views[key]
            # A view still reconciling keeps its place until its refreshes finish
            if key == keep or view.reconciler.has_background_work:
                continue
            del self._views[key]
            excess -= 1
            logger.debug(f"Dropped detail view {key} from the console session.")

    def has_view(self, key: str) -> bool:
        return key in self._views

    def list_view(self, read_only: bool = False) -> ActionOrchestrator:
        return self._view("list:read-only" if read_only else "list", lambda: ListRecordStore(read_only=read_only))

    def detail_view(self, lg_record_id: int, read_only: bool = False) -> ActionOrchestrator:
        key = f"{DETAIL_VIEW_PREFIX}{lg_record_id}:read-only" if read_only else f"{DETAIL_VIEW_PREFIX}{lg_record_id}"
        return self._view(key, lambda: DetailRecordStore(lg_record_id, read_only=read_only))

    def action_center(self) -> ActionOrchestrator:
        return self._view("action-center", ActionCenterStore)

    async def settle(self) -> None:
        for view in list(self._views.values()):
            await view.reconciler.settle()

    async def aclose(self) -> None:
        await self.settle()
        await self.api_client.aclose()


class ConsoleSessionRegistry:
    """Keeps one ConsoleSession per session token, closing sessions that went idle or whose token expired."""

    def __init__(
        self,
        client_factory: Optional[ApiClientFactory] = None,
        idle_seconds: Optional[float] = None,
        max_detail_views: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        settings = get_settings()
        self._client_factory = client_factory or (lambda token: LGApiClient(token=token))
        self.idle_seconds = idle_seconds if idle_seconds is not None else settings.session_idle_seconds
        self.max_detail_views = max_detail_views or settings.max_detail_views
        self._clock = clock
        self._sessions: Dict[str, ConsoleSession] = {}

    def get_or_create(self, session_token: SessionToken) -> ConsoleSession:
        session = self._sessions.get(session_token.raw)
        context = SubscriptionContext(status=session_token.data.subscription_status)
        if session is None:
            session = ConsoleSession(
                session_token.raw,
                context,
                self._client_factory(session_token.raw),
                expires_at=session_token.data.expires_at,
                max_detail_views=self.max_detail_views,
                clock=self._clock,
            )
            self._sessions[session_token.raw] = session
            logger.info(f"Opened console session for user {session_token.data.user_id}.")
        else:
            # Each request carries the current standing; the gate must see it
            session.subscription = context
            session.touch()
        return session

    async def evict_stale(self, now: Optional[datetime] = None) -> int:
        """Closes every session that has been idle too long or whose token has expired. Returns how many were closed."""
        tick = self._clock()
        stale = [
            token for token, session in self._sessions.items()
            if session.is_idle(tick, self.idle_seconds) or session.token_expired(now)
        ]
        for token in stale:
            session = self._sessions.pop(token)
            await session.aclose()
        if stale:
            logger.info(f"Closed {len(stale)} stale console session(s).")
        return len(stale)

    async def discard(self, token: str) -> None:
        session = self._sessions.pop(token, None)
        if session is not None:
            await session.aclose()
            logger.info("Closed console session after the authority rejected its token.")

    async def close_all(self) -> None:
        sessions, self._sessions = list(self._sessions.values()), {}
        for session in sessions:
            await session.aclose()

    def __contains__(self, token: str) -> bool:
        return token in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)


registry = ConsoleSessionRegistry()


def get_session_registry() -> ConsoleSessionRegistry:
    return registry
