"""Core payment reconciliation logic."""
from .reconciliation import ReconciliationService
from .refunds import RefundOrchestrator
from .router import PaymentRequestRouter
from .state_machine import ALLOWED_TRANSITIONS, assert_transition
from .stores import (
    AuditSink,
    BestEffortAuditSink,
    OrderStore,
    SqlAuditSink,
    SqlOrderStore,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "AuditSink",
    "BestEffortAuditSink",
    "OrderStore",
    "PaymentRequestRouter",
    "ReconciliationService",
    "RefundOrchestrator",
    "SqlAuditSink",
    "SqlOrderStore",
    "assert_transition",
]
