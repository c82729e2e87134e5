from sqlalchemy import Boolean
from sqlalchemy import Column
from sqlalchemy import DateTime
from sqlalchemy import Integer
from sqlalchemy import String
from sqlalchemy import Text

from chatgate.database import Base
from chatgate.utils.time import utc_now_naive

# ---------------------------------------------------------------------------
# Key/value settings – connection snapshot, scheduler config, vault blob
# ---------------------------------------------------------------------------


class Setting(Base):
    __tablename__ = "settings"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=utc_now_naive, onupdate=utc_now_naive, nullable=False)


# ---------------------------------------------------------------------------
# Audit history (append only)
# ---------------------------------------------------------------------------


class ScanHistory(Base):
    """One row per discovery scan, successful or not."""

    __tablename__ = "scan_history"

    id = Column(Integer, primary_key=True, index=True)
    trigger = Column(String, nullable=False)  # manual | scheduled
    started_at = Column(DateTime, nullable=False)
    finished_at = Column(DateTime, nullable=True)
    success = Column(Boolean, nullable=False, default=False)
    conversations_scanned = Column(Integer, nullable=False, default=0)
    messages_found = Column(Integer, nullable=False, default=0)
    new_suggestions = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)


class JobHistory(Base):
    """Terminal state of one analysis job."""

    __tablename__ = "job_history"

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(String, nullable=False, index=True)
    project_id = Column(String, nullable=False)
    channel_id = Column(String, nullable=True)
    analysis_type = Column(String, nullable=False)
    status = Column(String, nullable=False)  # completed | failed | cancelled
    message_count = Column(Integer, nullable=False, default=0)
    duration_ms = Column(Integer, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utc_now_naive, nullable=False)
