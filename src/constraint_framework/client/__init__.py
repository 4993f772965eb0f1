"""Client API: template/constraint management, Review and Audit."""

from constraint_framework.client.audit import AuditBatch, summarize_audit
from constraint_framework.client.client import Client

__all__ = ["AuditBatch", "Client", "summarize_audit"]
