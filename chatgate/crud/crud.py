from datetime import datetime
from typing import List
from typing import Optional

from sqlalchemy.orm import Session

from chatgate.models.models import JobHistory
from chatgate.models.models import ScanHistory
from chatgate.models.models import Setting
from chatgate.utils.time import utc_now_naive

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def get_setting(db: Session, key: str) -> Optional[str]:
    row = db.get(Setting, key)
    return row.value if row is not None else None


def set_setting(db: Session, key: str, value: str) -> Setting:
    row = db.get(Setting, key)
    if row is None:
        row = Setting(key=key, value=value)
        db.add(row)
    else:
        row.value = value
        row.updated_at = utc_now_naive()
    db.flush()
    return row


def delete_setting(db: Session, key: str) -> bool:
    """Delete *key*; returns False when it did not exist."""

    row = db.get(Setting, key)
    if row is None:
        return False
    db.delete(row)
    return True


# ---------------------------------------------------------------------------
# Scan / job history
# ---------------------------------------------------------------------------


def record_scan(
    db: Session,
    *,
    trigger: str,
    started_at: datetime,
    finished_at: Optional[datetime],
    success: bool,
    conversations_scanned: int = 0,
    messages_found: int = 0,
    new_suggestions: int = 0,
    error: Optional[str] = None,
) -> ScanHistory:
    row = ScanHistory(
        trigger=trigger,
        started_at=started_at,
        finished_at=finished_at,
        success=success,
        conversations_scanned=conversations_scanned,
        messages_found=messages_found,
        new_suggestions=new_suggestions,
        error=error,
    )
    db.add(row)
    db.flush()
    return row


def list_scan_history(db: Session, limit: int = 50) -> List[ScanHistory]:
    return db.query(ScanHistory).order_by(ScanHistory.id.desc()).limit(limit).all()


def record_job(
    db: Session,
    *,
    job_id: str,
    project_id: str,
    analysis_type: str,
    status: str,
    message_count: int,
    channel_id: Optional[str] = None,
    duration_ms: Optional[int] = None,
    error: Optional[str] = None,
) -> JobHistory:
    row = JobHistory(
        job_id=job_id,
        project_id=project_id,
        channel_id=channel_id,
        analysis_type=analysis_type,
        status=status,
        message_count=message_count,
        duration_ms=duration_ms,
        error=error,
    )
    db.add(row)
    db.flush()
    return row


def list_job_history(db: Session, limit: int = 50, status: Optional[str] = None) -> List[JobHistory]:
    query = db.query(JobHistory)
    if status is not None:
        query = query.filter(JobHistory.status == status)
    return query.order_by(JobHistory.id.desc()).limit(limit).all()
