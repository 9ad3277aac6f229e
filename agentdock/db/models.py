"""
SQLAlchemy ORM models for agentdock.

The sessions table stores the projected session status, so a client
reconnecting after a reload sees the correct status and any outstanding
prompt without replaying events.
"""
import json
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import DateTime, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base


class SessionRecord(Base):
    """
    Persisted view of one session.

    Not authoritative over runner state: status, permission_mode and
    pending_prompt are projections written from runner snapshots.
    """
    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    working_dir: Mapped[str] = mapped_column(Text)
    resume_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(30), default="idle")
    permission_mode: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    model: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    pending_prompt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc)
    )

    num_turns: Mapped[int] = mapped_column(Integer, default=0)
    total_cost_usd: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    def get_pending_prompt(self) -> Optional[dict[str, Any]]:
        """Decode the stored pending prompt, if any."""
        if not self.pending_prompt:
            return None
        return json.loads(self.pending_prompt)
