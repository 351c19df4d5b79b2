from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Index, String, Text, text as sa_text
from sqlalchemy.orm import Mapped, mapped_column

from storyloom.domain.models import MAIN_BRANCH
from storyloom.storage.base import Base


class CharacterRecord(Base):
    __tablename__ = "characters"
    __table_args__ = (Index("idx_characters_story_branch", "story_id", "branch_id"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    story_id: Mapped[int] = mapped_column(ForeignKey("stories.id", ondelete="CASCADE"), nullable=False)
    branch_id: Mapped[str] = mapped_column(String(64), nullable=False, default=MAIN_BRANCH)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    relationship: Mapped[str | None] = mapped_column(Text, nullable=True)
    traits: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    visual_descriptors: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active", server_default="active")
    meta: Mapped[dict[str, Any] | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=sa_text("CURRENT_TIMESTAMP"), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=sa_text("CURRENT_TIMESTAMP"),
        onupdate=sa_text("CURRENT_TIMESTAMP"),
        nullable=False,
    )
