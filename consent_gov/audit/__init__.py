"""
Audit Subpackage for the Consent Governance Engine

Redacting, buffered audit trail for consent lifecycle and access decisions.
"""

from .redaction import RedactionPolicy
from .emitter import AuditEmitter, AuditSink, InMemoryAuditSink, CRITICAL_ACTIONS

__all__ = [
    "RedactionPolicy",
    "AuditEmitter",
    "AuditSink",
    "InMemoryAuditSink",
    "CRITICAL_ACTIONS",
]
