# returnguard/audit/__init__.py
# ==============================
# Audit Trail — ReturnGuard
#
# Every decision and policy change lands here before the owning entity is
# mutated. A failed write aborts the decision.

from returnguard.audit.log import (  # noqa: F401
    AuditLog,
    AuditSink,
    JsonlAuditSink,
    make_entry,
)
