"""
PanelAuth Audit Logging
Append-only audit trail and login-attempt records, plus the queries over them.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import distinct, func, select
from sqlalchemy.orm import Session

from panelauth.core.logging import LoggerMixin
from panelauth.database.models import AuditLog, AuditStatus, LoginAttempt, utcnow


@dataclass
class AuditStats:
    total: int = 0
    today: int = 0
    failed: int = 0
    unique_users: int = 0
    actions: Dict[str, int] = field(default_factory=dict)
    resources: Dict[str, int] = field(default_factory=dict)


class AuditLogger(LoggerMixin):
    """
    Fire-and-forget audit writer.

    Records are written in their own commit after the primary operation has
    committed; a failed write is rolled back and logged, never raised.
    """

    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    def record(
        self,
        action: str,
        resource: str,
        user_id: Optional[str] = None,
        username: Optional[str] = None,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        status: str = AuditStatus.SUCCESS.value,
        duration_ms: Optional[int] = None,
        request_id: Optional[str] = None,
    ) -> Optional[AuditLog]:
        entry = AuditLog(
            user_id=user_id,
            username=username,
            action=str(getattr(action, "value", action)),
            resource=resource,
            resource_id=resource_id,
            details=details or {},
            old_value=old_value,
            new_value=new_value,
            ip_address=ip_address,
            user_agent=user_agent,
            status=str(getattr(status, "value", status)),
            duration_ms=duration_ms,
            request_id=request_id,
            created_at=self.clock(),
        )
        if self._write(entry):
            self.logger.info(f"Audit: {entry.action} on {resource} by {username or user_id or 'system'}")
            return entry
        return None

    def record_login_attempt(
        self,
        username: str,
        success: bool,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        user_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Optional[LoginAttempt]:
        attempt = LoginAttempt(
            username=username,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            success=success,
            reason=reason,
            created_at=self.clock(),
        )
        return attempt if self._write(attempt) else None

    def _write(self, record: Any) -> bool:
        try:
            self.db.add(record)
            self.db.commit()
            return True
        except Exception as e:
            self.db.rollback()
            self.log_with_context(
                logging.ERROR,
                f"Failed to write {type(record).__name__}: {e}",
                {"record": type(record).__name__, "action": getattr(record, "action", None)},
            )
            return False

    # Queries

    def get_audit_logs(
        self,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        resource: Optional[str] = None,
        status: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> Tuple[List[AuditLog], int]:
        """Newest first, with the total row count for pagination"""
        query = select(AuditLog)
        if user_id:
            query = query.where(AuditLog.user_id == user_id)
        if action:
            query = query.where(AuditLog.action == action)
        if resource:
            query = query.where(AuditLog.resource == resource)
        if status:
            query = query.where(AuditLog.status == status)
        if start:
            query = query.where(AuditLog.created_at >= start)
        if end:
            query = query.where(AuditLog.created_at <= end)

        total = self.db.scalar(select(func.count()).select_from(query.subquery())) or 0

        page = max(page, 1)
        page_size = max(1, min(page_size, 500))
        rows = self.db.scalars(
            query.order_by(AuditLog.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).all()
        return list(rows), total

    def get_audit_stats(self, now: Optional[datetime] = None) -> AuditStats:
        now = now or self.clock()
        day_start = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)

        stats = AuditStats()
        stats.total = self.db.scalar(select(func.count(AuditLog.id))) or 0
        stats.today = self.db.scalar(
            select(func.count(AuditLog.id)).where(
                AuditLog.created_at >= day_start,
                AuditLog.created_at < day_start + timedelta(days=1),
            )
        ) or 0
        stats.failed = self.db.scalar(
            select(func.count(AuditLog.id)).where(AuditLog.status == AuditStatus.FAILURE.value)
        ) or 0
        stats.unique_users = self.db.scalar(
            select(func.count(distinct(AuditLog.user_id))).where(AuditLog.user_id.is_not(None))
        ) or 0
        stats.actions = dict(self.db.execute(
            select(AuditLog.action, func.count(AuditLog.id)).group_by(AuditLog.action)
        ).all())
        stats.resources = dict(self.db.execute(
            select(AuditLog.resource, func.count(AuditLog.id)).group_by(AuditLog.resource)
        ).all())
        return stats

    def get_audit_actions(self) -> List[str]:
        return list(self.db.scalars(select(AuditLog.action).distinct().order_by(AuditLog.action)))

    def get_audit_resources(self) -> List[str]:
        return list(self.db.scalars(select(AuditLog.resource).distinct().order_by(AuditLog.resource)))

    def get_login_attempts(
        self,
        username: Optional[str] = None,
        ip_address: Optional[str] = None,
        success: Optional[bool] = None,
        limit: int = 100,
    ) -> List[LoginAttempt]:
        query = select(LoginAttempt)
        if username:
            query = query.where(LoginAttempt.username == username)
        if ip_address:
            query = query.where(LoginAttempt.ip_address == ip_address)
        if success is not None:
            query = query.where(LoginAttempt.success == success)
        return list(self.db.scalars(query.order_by(LoginAttempt.created_at.desc()).limit(limit)))

    def failure_reasons(self, username: str) -> Dict[str, int]:
        """Failed login attempts for a username, grouped by reason"""
        attempts = self.get_login_attempts(username=username, success=False, limit=1000)
        return dict(Counter(a.reason or "unknown" for a in attempts))
