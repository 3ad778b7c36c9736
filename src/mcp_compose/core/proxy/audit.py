"""
In-memory audit trail for authentication and OAuth events.
"""

import secrets
import time
from collections import Counter, deque
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, List, Optional

from pydantic import BaseModel, Field

from mcp_compose.core.models import utcnow
from mcp_compose.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_ENTRIES = 1000
DEFAULT_MAX_AGE = timedelta(days=7)


class AuditEntry(BaseModel):
    """One audited event."""

    id: str = Field(default_factory=lambda: f"audit_{time.time_ns()}_{secrets.token_hex(4)}")
    timestamp: datetime = Field(default_factory=utcnow)
    event: str
    client_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    success: bool = True
    error: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class AuditLog:
    """Bounded, newest-last list of audit entries."""

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES, max_age: timedelta = DEFAULT_MAX_AGE):
        self.max_entries = max_entries
        self.max_age = max_age
        self._entries: Deque[AuditEntry] = deque(maxlen=max_entries)

    def record(
        self,
        event: str,
        success: bool = True,
        client_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        error: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            event=event,
            success=success,
            client_id=client_id,
            ip_address=ip_address,
            user_agent=user_agent,
            error=error,
            details=details or {},
        )
        self._entries.append(entry)

        if success:
            logger.info(f"AUDIT: {event} - Client: {client_id or '-'}, Success: True")
        else:
            logger.warning(f"AUDIT: {event} - Client: {client_id or '-'}, Success: False")
        return entry

    def prune(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or utcnow()) - self.max_age
        before = len(self._entries)
        kept = [e for e in self._entries if e.timestamp > cutoff]
        self._entries = deque(kept, maxlen=self.max_entries)
        return before - len(kept)

    def entries(self, limit: int = 100, offset: int = 0, event: Optional[str] = None) -> Dict[str, Any]:
        """Newest entries first, paginated."""
        self.prune()
        filtered = [e for e in reversed(self._entries) if event is None or e.event == event]
        page = filtered[offset:offset + limit] if limit > 0 else filtered[offset:]
        return {
            "entries": [e.model_dump(mode="json", exclude_none=True) for e in page],
            "total": len(filtered),
            "limit": limit,
            "offset": offset,
        }

    def stats(self) -> Dict[str, Any]:
        total = len(self._entries)
        if total == 0:
            return {"total_entries": 0, "success_rate": 100.0, "event_counts": {}}

        successes = sum(1 for e in self._entries if e.success)
        return {
            "total_entries": total,
            "success_rate": round(successes / total * 100, 2),
            "event_counts": dict(Counter(e.event for e in self._entries)),
        }

    def __len__(self) -> int:
        return len(self._entries)

    def all(self) -> List[AuditEntry]:
        return list(self._entries)
