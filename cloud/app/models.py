from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on postgres, plain JSON elsewhere (sqlite in tests)
JSONType = sa.JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class Run(Base):
    __tablename__ = "runs"
    id: Mapped[str] = mapped_column(sa.Text, primary_key=True)
    pipeline: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    commit: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    parameters: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    outputs: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    started_at: Mapped[str] = mapped_column(sa.Text, nullable=False)
    finished_at: Mapped[str] = mapped_column(sa.Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False)


class StageRecord(Base):
    __tablename__ = "stages"
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(sa.Text, sa.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False, index=True)
    position: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    state: Mapped[str] = mapped_column(sa.Text, nullable=False)
    reason: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    duration: Mapped[float] = mapped_column(sa.Float, nullable=False, default=0.0)
    jobs: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    bundles: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)


class ArtifactRecord(Base):
    __tablename__ = "artifacts"
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(sa.Text, sa.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    producer: Mapped[str] = mapped_column(sa.Text, nullable=False)
    publish_always: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    published: Mapped[bool] = mapped_column(sa.Boolean, nullable=False)
    file_count: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    reason: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
