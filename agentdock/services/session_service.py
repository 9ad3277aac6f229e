"""
Session service for agentdock.

Handles session record CRUD and persistence of the projected session
status. Records are a view of runner state, written by
SessionStateRecorder from runner snapshots and events.

Implements robustness features:
- Error handling with proper rollback
- Retry logic for transient database failures
- Session ID format validation
- Working directory cleanup when creation fails
"""
import asyncio
import json
import logging
import re
import shutil
import uuid
from datetime import datetime, timezone
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import SESSIONS_DIR
from ..core.events import EventType, PermissionMode, RunnerSnapshot
from ..core.session_state import SessionStatus, project_snapshot
from ..db.models import SessionRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Session ID validation pattern: YYYYMMDD_HHMMSS_hexchars
SESSION_ID_PATTERN = re.compile(r"^\d{8}_\d{6}_[a-f0-9]{8}$")

# Retry configuration
MAX_RETRIES = 3
RETRY_DELAY_SECONDS = 0.1
RETRY_BACKOFF_MULTIPLIER = 2.0


class SessionServiceError(Exception):
    """Base exception for session service errors."""
    pass


class SessionCreationError(SessionServiceError):
    """Error during session creation."""
    pass


class InvalidSessionIdError(SessionServiceError):
    """Invalid session ID format."""
    pass


def generate_session_id() -> str:
    """Generate a unique session ID."""
    ts = datetime.now().strftime("%Y%m%d_%H%M%S")
    uid = uuid.uuid4().hex[:8]
    return f"{ts}_{uid}"


def validate_session_id(session_id: str) -> None:
    """
    Validate session ID format to prevent path traversal.

    Args:
        session_id: The session ID to validate.

    Raises:
        InvalidSessionIdError: If the session ID format is invalid.
    """
    if not session_id:
        raise InvalidSessionIdError("Session ID cannot be empty")

    if not SESSION_ID_PATTERN.match(session_id):
        raise InvalidSessionIdError(
            f"Invalid session ID format: {session_id}. "
            "Expected format: YYYYMMDD_HHMMSS_hexchars"
        )


def with_db_retry(
    max_retries: int = MAX_RETRIES,
    retry_delay: float = RETRY_DELAY_SECONDS,
    backoff_multiplier: float = RETRY_BACKOFF_MULTIPLIER,
) -> Callable:
    """
    Decorator for retrying database operations on transient failures.

    Retries on OperationalError (connection issues, locks, etc.)
    but not on IntegrityError (constraint violations).
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            last_error: Optional[Exception] = None
            delay = retry_delay

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except OperationalError as e:
                    last_error = e
                    if attempt < max_retries:
                        logger.warning(
                            f"Database operation failed (attempt {attempt + 1}/{max_retries + 1}): {e}. "
                            f"Retrying in {delay:.2f}s..."
                        )
                        await asyncio.sleep(delay)
                        delay *= backoff_multiplier
                    else:
                        logger.error(
                            f"Database operation failed after {max_retries + 1} attempts: {e}"
                        )
                except IntegrityError:
                    raise

            raise last_error  # type: ignore
        return wrapper
    return decorator


class SessionService:
    """
    Service for session records.

    Every method takes the database session to use, so callers control
    transaction scope.
    """

    def __init__(self, sessions_dir: Optional[Path] = None) -> None:
        """
        Initialize the session service.

        Args:
            sessions_dir: Parent of auto-created working directories.
        """
        self._sessions_dir = sessions_dir or SESSIONS_DIR

    @property
    def sessions_dir(self) -> Path:
        return self._sessions_dir

    @with_db_retry()
    async def create_session(
        self,
        db: AsyncSession,
        name: Optional[str] = None,
        working_dir: Optional[str] = None,
        resume_id: Optional[str] = None,
        permission_mode: Optional[PermissionMode] = None,
    ) -> SessionRecord:
        """
        Create a new session record.

        Without a working_dir, a directory named after the session is
        created under the sessions directory and removed again if the
        record cannot be committed.

        Args:
            db: Database session.
            name: Display name.
            working_dir: Working directory for the agent.
            resume_id: External agent session id to resume.
            permission_mode: Initial permission mode.

        Returns:
            The created record.

        Raises:
            SessionCreationError: If the session could not be created.
        """
        session_id = generate_session_id()
        validate_session_id(session_id)

        created_dir: Optional[Path] = None
        if working_dir is None:
            created_dir = self._sessions_dir / session_id
            try:
                created_dir.mkdir(parents=True, exist_ok=False)
            except OSError as e:
                raise SessionCreationError(
                    f"Failed to create working directory {created_dir}: {e}"
                ) from e
            working_dir = str(created_dir)

        record = SessionRecord(
            id=session_id,
            name=name,
            working_dir=working_dir,
            resume_id=resume_id,
            status=SessionStatus.IDLE.value,
            permission_mode=permission_mode.value if permission_mode else None,
        )
        db.add(record)

        try:
            await db.commit()
            await db.refresh(record)
        except Exception as db_error:
            logger.error(f"Database commit failed for session {session_id}: {db_error}")
            await db.rollback()
            if created_dir is not None:
                self._cleanup_working_dir(created_dir)
            raise SessionCreationError(
                f"Failed to create session in database: {db_error}"
            ) from db_error

        logger.info(f"Created session: {session_id} ({working_dir})")
        return record

    def _cleanup_working_dir(self, path: Path) -> None:
        try:
            if path.exists():
                shutil.rmtree(path)
                logger.info(f"Cleaned up orphaned working directory: {path}")
        except OSError as cleanup_error:
            logger.warning(f"Failed to cleanup working directory {path}: {cleanup_error}")

    @with_db_retry()
    async def get_session(self, db: AsyncSession, session_id: str) -> Optional[SessionRecord]:
        """
        Get a session by ID.

        Raises:
            InvalidSessionIdError: If session ID format is invalid.
        """
        validate_session_id(session_id)
        result = await db.execute(select(SessionRecord).where(SessionRecord.id == session_id))
        return result.scalar_one_or_none()

    @with_db_retry()
    async def list_sessions(
        self,
        db: AsyncSession,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[SessionRecord], int]:
        """
        List sessions, newest first.

        Returns:
            Tuple of (sessions list, total count).
        """
        count_result = await db.execute(select(func.count()).select_from(SessionRecord))
        total = count_result.scalar_one()

        query = (
            select(SessionRecord)
            .order_by(SessionRecord.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await db.execute(query)
        return list(result.scalars().all()), total

    @with_db_retry()
    async def update_session(
        self,
        db: AsyncSession,
        record: SessionRecord,
        **fields: Any,
    ) -> SessionRecord:
        """
        Update columns of a session record; None values are skipped.

        Use clear_pending_prompt=True to reset the pending prompt.
        """
        if fields.pop("clear_pending_prompt", False):
            record.pending_prompt = None
        for key, value in fields.items():
            if value is None:
                continue
            if not hasattr(SessionRecord, key):
                raise AttributeError(f"SessionRecord has no column {key!r}")
            setattr(record, key, value)
        record.updated_at = datetime.now(timezone.utc)

        try:
            await db.commit()
            await db.refresh(record)
        except Exception as e:
            logger.error(f"Failed to update session {record.id}: {e}")
            await db.rollback()
            raise
        return record

    @with_db_retry()
    async def delete_session(self, db: AsyncSession, session_id: str) -> bool:
        """
        Delete a session record (the working directory is left in place).

        Returns:
            True if a record was deleted.
        """
        record = await self.get_session(db, session_id)
        if record is None:
            return False
        await db.delete(record)
        await db.commit()
        logger.info(f"Deleted session: {session_id}")
        return True

    async def cleanup_stale_sessions(self, db: AsyncSession) -> int:
        """
        Reset sessions left non-idle by a host restart.

        No runner survives a restart, so the projected status of every
        session is idle and no prompt can still be answered.

        Returns:
            Number of sessions reset.
        """
        query = select(SessionRecord).where(
            (SessionRecord.status != SessionStatus.IDLE.value)
            | SessionRecord.pending_prompt.is_not(None)
        )
        result = await db.execute(query)
        stale = list(result.scalars().all())

        for record in stale:
            logger.warning(f"Resetting stale session {record.id} ({record.status} -> idle)")
            record.status = SessionStatus.IDLE.value
            record.pending_prompt = None

        if stale:
            await db.commit()
            logger.info(f"Cleaned up {len(stale)} stale sessions")
        return len(stale)


class SessionStateRecorder:
    """
    Persists projected session state from runner callbacks.

    record_snapshot() and record_event() are synchronous so they can be
    passed as RunnerManager sinks; writes are applied in call order by a
    single background worker. Sessions without a record are skipped.

    Usage:
        recorder = SessionStateRecorder(session_factory)
        recorder.start()
        manager = RunnerManager(launcher, on_event=recorder.record_event,
                                on_state=recorder.record_snapshot)
        ...
        await recorder.close()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        service: Optional[SessionService] = None,
    ) -> None:
        self._session_factory = session_factory
        self._service = service or SessionService()
        self._queue: asyncio.Queue[Optional[tuple[str, dict[str, Any]]]] = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self.write_count = 0

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def close(self) -> None:
        """Apply queued writes and stop the worker."""
        if self._task is None:
            return
        await self._queue.put(None)
        await self._task
        self._task = None

    async def flush(self) -> None:
        """Wait until every queued write has been applied."""
        await self._queue.join()

    def record_snapshot(self, snapshot: RunnerSnapshot) -> None:
        """Queue the projected status, mode and pending prompt of a snapshot."""
        prompt = snapshot.pending_prompt
        fields: dict[str, Any] = {
            "status": project_snapshot(snapshot).value,
            "permission_mode": snapshot.permission_mode.value if snapshot.permission_mode else None,
            "resume_id": snapshot.external_session_id,
        }
        if prompt is not None:
            fields["pending_prompt"] = json.dumps(prompt.to_dict())
        else:
            fields["clear_pending_prompt"] = True
        self._queue.put_nowait((snapshot.session_id, fields))

    def record_event(self, session_id: str, event_type: str, payload: dict[str, Any]) -> None:
        """Queue record updates carried by system and result events."""
        if event_type == EventType.SYSTEM:
            fields = {"model": payload.get("model"), "resume_id": payload.get("session_id")}
        elif event_type == EventType.RESULT:
            fields = {
                "resume_id": payload.get("session_id"),
                "num_turns": payload.get("num_turns"),
                "total_cost_usd": payload.get("total_cost_usd"),
            }
        else:
            return
        self._queue.put_nowait((session_id, fields))

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is None:
                    return
                session_id, fields = item
                await self._apply(session_id, fields)
            except Exception:
                logger.exception("Failed to persist session state")
            finally:
                self._queue.task_done()

    async def _apply(self, session_id: str, fields: dict[str, Any]) -> None:
        try:
            validate_session_id(session_id)
        except InvalidSessionIdError:
            logger.debug(f"Not persisting state for unmanaged session {session_id}")
            return

        async with self._session_factory() as db:
            record = await self._service.get_session(db, session_id)
            if record is None:
                logger.debug(f"No record for session {session_id}, state not persisted")
                return
            await self._service.update_session(db, record, **fields)
            self.write_count += 1
