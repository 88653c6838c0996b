"""
Base class for the group settlement domain services.

Services are constructed explicitly with their collaborators:

    registry = SessionService(db, locks=locks, notifier=notifier)

There is no process-wide service instance; the lock manager is the only
object that must be shared between the services of one process.

Every mutation of a session-scoped invariant runs inside ``_session_guard``:

    with self._session_guard(session_id) as table_session:
        ...  # validate, then write
        safe_commit(self._db)
    self._dispatch()

The guard holds the per-session lock for the whole unit of work and re-reads
the TableSession row with SELECT ... FOR UPDATE. Notifications queued with
``_emit`` are delivered by ``_dispatch`` after commit, outside the lock.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from shared.config.logging import get_logger
from shared.config.settings import Settings, settings as default_settings
from shared.infrastructure.events import Event, Notifier
from shared.infrastructure.locks import KeyedLockManager, session_key
from shared.utils.exceptions import SessionNotActiveError, SessionNotFoundError
from group_settlement.models import TableSession

logger = get_logger(__name__)


class DomainService:
    """
    Common infrastructure for domain services: DB session, per-session
    locking and notify-after-commit.
    """

    def __init__(
        self,
        db: Session,
        *,
        locks: KeyedLockManager,
        notifier: Notifier,
        config: Settings | None = None,
    ):
        self._db = db
        self._locks = locks
        self._notifier = notifier
        self._settings = config or default_settings
        self._pending_events: list[tuple[int | str, Event]] = []
        self._guard_depth = 0

    @property
    def db(self) -> Session:
        """Database session."""
        return self._db

    @property
    def settings(self) -> Settings:
        return self._settings

    # =========================================================================
    # Locking
    # =========================================================================

    @contextmanager
    def _session_guard(self, session_id: int, require_active: bool = True) -> Iterator[TableSession]:
        """
        Scoped exclusive access to one table session aggregate.

        Yields the freshly read TableSession. Any exception rolls back the
        unit of work and drops queued notifications.
        """
        with self._locks.hold(session_key(session_id)):
            outermost = self._guard_depth == 0
            if outermost:
                # Start from committed state: objects loaded before the lock
                # was acquired may be stale.
                self._db.expire_all()
            self._guard_depth += 1
            try:
                table_session = self._db.scalar(
                    select(TableSession)
                    .where(TableSession.id == session_id)
                    .with_for_update()
                    .execution_options(populate_existing=True)
                )
                if table_session is None:
                    raise SessionNotFoundError(session_id)
                if require_active and not table_session.is_active:
                    raise SessionNotActiveError(session_id)
                yield table_session
            except Exception:
                if outermost:
                    self._db.rollback()
                    self._pending_events.clear()
                raise
            finally:
                self._guard_depth -= 1

    # =========================================================================
    # Notifications
    # =========================================================================

    def _emit(self, target: int | str, event_type: str, session_id: int, **entity: Any) -> None:
        """Queue a notification for delivery after the next commit."""
        self._pending_events.append(
            (target, Event(type=event_type, session_id=session_id, entity=entity))
        )

    def _dispatch(self) -> None:
        """Hand queued notifications to the notifier (fire-and-forget)."""
        events = list(self._pending_events)
        self._pending_events.clear()
        for target, event in events:
            self._deliver(target, event)

    def _notify_now(self, target: int | str, event_type: str, session_id: int, **entity: Any) -> None:
        """Send a notification immediately, even if the unit of work fails."""
        self._deliver(target, Event(type=event_type, session_id=session_id, entity=entity))

    def _deliver(self, target: int | str, event: Event) -> None:
        try:
            self._notifier.notify(target, event)
        except Exception as e:
            # Delivery must never fail a committed operation
            logger.warning(
                "Notifier rejected event",
                target=target,
                event_type=event.type,
                session_id=event.session_id,
                error=str(e),
            )

    def _discard_events(self) -> None:
        self._pending_events.clear()
