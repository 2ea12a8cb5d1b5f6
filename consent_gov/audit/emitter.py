"""
Audit trail emitter
Redacts, logs, buffers and persists consent lifecycle and access events
"""

import asyncio
import threading
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Protocol
import structlog

from .redaction import RedactionPolicy
from ..config import GovernanceConfig, get_config
from ..consent.models import AuditAction, ConsentAuditLog, RequestContext

logger = structlog.get_logger(__name__)

# Durable structured stream; every entry is written here before buffering
audit_stream = structlog.get_logger("consent_gov.audit.trail")

# Actions flushed to the sink immediately instead of waiting for the timer
CRITICAL_ACTIONS = frozenset({
    AuditAction.AUTH_DENIED,
    AuditAction.REQUEST_DENIED,
    AuditAction.GRANT_REVOKED,
    AuditAction.THREAT_DETECTED,
})


class AuditSink(Protocol):
    def store_audit_logs(self, entries: List[ConsentAuditLog]) -> int:
        ...


class InMemoryAuditSink:
    """In-memory audit sink for testing"""

    def __init__(self):
        self.entries: Dict[str, ConsentAuditLog] = {}
        self.batches: List[List[str]] = []

    def store_audit_logs(self, entries: List[ConsentAuditLog]) -> int:
        stored = 0
        for entry in entries:
            if entry.id not in self.entries:
                self.entries[entry.id] = entry
                stored += 1
        self.batches.append([e.id for e in entries])
        return stored

    def list_audit_logs(self, student_id: str, limit: int = 50) -> List[ConsentAuditLog]:
        matching = [e for e in self.entries.values() if e.student_id == student_id]
        matching.sort(key=lambda e: e.created_at, reverse=True)
        return matching[:limit]


class AuditEmitter:
    """Buffered, redacting audit trail writer"""

    def __init__(self, sink: AuditSink, redaction: Optional[RedactionPolicy] = None,
                 flush_interval: Optional[float] = None,
                 config: Optional[GovernanceConfig] = None):
        self.config = config or get_config()
        self.sink = sink
        self.redaction = redaction or RedactionPolicy(self.config.audit_redacted_fields)
        self.flush_interval = flush_interval or self.config.audit_flush_interval_seconds
        self.enabled = self.config.audit_enabled

        self._buffer: Deque[ConsentAuditLog] = deque()
        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._buffer)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def record(self, entry: ConsentAuditLog) -> ConsentAuditLog:
        """
        Record an audit entry.

        The redacted entry is written to the structured audit stream
        synchronously, then buffered for persistence. Critical actions
        trigger an immediate flush.

        Returns:
            The redacted entry as buffered
        """
        redacted = entry.model_copy(update={"metadata": self.redaction.redact(entry.metadata)})

        audit_stream.info(
            "Audit event recorded",
            audit_id=redacted.id,
            action=redacted.action.value,
            student_id=redacted.student_id,
            service_id=redacted.service_id,
            request_id=redacted.request_id,
            grant_id=redacted.grant_id,
            ip_address=redacted.ip_address,
            metadata=redacted.metadata,
        )

        if not self.enabled:
            return redacted

        with self._lock:
            self._buffer.append(redacted)

        if redacted.action in CRITICAL_ACTIONS:
            self.flush()

        return redacted

    def log_event(self, action: AuditAction, student_id: str,
                  service_id: Optional[str] = None, request_id: Optional[str] = None,
                  grant_id: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None,
                  context: Optional[RequestContext] = None) -> ConsentAuditLog:
        """Build and record an audit entry"""
        context = context or RequestContext()
        return self.record(ConsentAuditLog(
            action=action,
            student_id=student_id,
            service_id=service_id,
            request_id=request_id,
            grant_id=grant_id,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            metadata=metadata or {},
        ))

    def flush(self) -> int:
        """
        Drain the buffer into the sink.

        On failure the batch goes back to the front of the buffer, ahead of
        anything recorded meanwhile, and the error is logged.

        Returns:
            Number of entries handed to the sink (0 on failure)
        """
        with self._flush_lock:
            with self._lock:
                if not self._buffer:
                    return 0
                batch = list(self._buffer)
                self._buffer.clear()

            try:
                stored = self.sink.store_audit_logs(batch)
            except Exception as e:
                with self._lock:
                    self._buffer.extendleft(reversed(batch))
                logger.error("Audit flush failed, entries re-queued",
                             entry_count=len(batch), error=str(e))
                return 0

            logger.debug("Audit buffer flushed", entry_count=len(batch), stored=stored)
            return len(batch)

    async def start(self) -> None:
        """Start the periodic background flush"""
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._flush_loop())
        logger.info("Audit emitter started", flush_interval=self.flush_interval)

    async def _flush_loop(self) -> None:
        assert self._stop_event is not None
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.flush_interval)
            except asyncio.TimeoutError:
                await asyncio.to_thread(self.flush)

    async def stop(self) -> None:
        """Cancel the background flush and persist whatever is still buffered"""
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        self.flush()
        logger.info("Audit emitter stopped", pending=self.pending)
