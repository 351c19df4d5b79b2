from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text, text as sa_text
from sqlalchemy.orm import Mapped, mapped_column

from storyloom.domain.models import MAIN_BRANCH
from storyloom.storage.base import Base


class LorebookEntryRecord(Base):
    __tablename__ = "lorebook_entries"
    __table_args__ = (Index("idx_lorebook_entries_story_branch", "story_id", "branch_id"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    story_id: Mapped[int] = mapped_column(ForeignKey("stories.id", ondelete="CASCADE"), nullable=False)
    branch_id: Mapped[str] = mapped_column(String(64), nullable=False, default=MAIN_BRANCH)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False, default="concept")
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    keywords: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    aliases: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    injection_mode: Mapped[str] = mapped_column(String(16), nullable=False, default="keyword")
    injection_priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    mention_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_by: Mapped[str] = mapped_column(String(32), nullable=False, default="user")
    seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=sa_text("CURRENT_TIMESTAMP"), nullable=False
    )
