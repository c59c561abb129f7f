from __future__ import annotations

import logging
import uuid
from typing import Any, Callable, Dict, List, Optional

from .models import AuditEntry, ExecutionRecord, StepEntry
from .store import GiftStore

log = logging.getLogger(__name__)

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class ExecutionLedger:
    """Append-only trail of what each execution attempt did.

    Used for audit and post-mortems only. Nothing here feeds back into
    control flow; the persisted ExecutionStatus does that. Every call is also
    mirrored to the ``advent_gifts.execution_log`` logger.
    """

    def __init__(self, store: GiftStore, now: Callable[[], Any]) -> None:
        self.store = store
        self._now = now
        self._step_counters: Dict[str, int] = {}

    def start_execution(self, day: int, variant: str, meta: Optional[Dict[str, Any]] = None) -> str:
        execution_id = uuid.uuid4().hex
        self.store.insert_execution(
            ExecutionRecord(
                execution_id=execution_id,
                day=day,
                variant=variant,
                start_time=self._now(),
                status="running",
                summary=dict(meta or {}),
            )
        )
        self._step_counters[execution_id] = 0
        log.info("[%s] day %d: execution started (%s)", execution_id[:8], day, variant)
        return execution_id

    def log_step(
        self,
        execution_id: str,
        step_name: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        level: str = "info",
    ) -> int:
        if execution_id in self._step_counters:
            number = self._step_counters[execution_id] + 1
            self._step_counters[execution_id] = number
        else:
            # finished executions may still log a closing step
            number = len(self.store.get_steps(execution_id)) + 1
        self.store.append_step(
            StepEntry(
                execution_id=execution_id,
                step_number=number,
                step_name=step_name,
                message=message,
                level=level,
                data=dict(data or {}),
                timestamp=self._now(),
            )
        )
        log.log(_LEVELS.get(level, logging.INFO), "[%s] #%d %s: %s", execution_id[:8], number, step_name, message)
        return number

    def complete(self, execution_id: str, status: str, summary_fields: Optional[Dict[str, Any]] = None) -> None:
        self.store.complete_execution(execution_id, status, self._now(), dict(summary_fields or {}))
        self._step_counters.pop(execution_id, None)
        log.info("[%s] execution finished: %s", execution_id[:8], status)

    def steps(self, execution_id: str) -> List[StepEntry]:
        return self.store.get_steps(execution_id)

    def executions_for_day(self, day: int) -> List[ExecutionRecord]:
        return self.store.executions_for_day(day)

    def audit(self, action: str, payload: Dict[str, Any], **kwargs: Any) -> None:
        self.store.append_audit(action, payload, ts=self._now(), **kwargs)
        log.debug("audit %s %s", action, payload)

    def audit_entries(self, limit: int = 100, action: Optional[str] = None) -> List[AuditEntry]:
        return self.store.audit_entries(limit=limit, action=action)
