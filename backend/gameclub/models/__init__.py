from gameclub.models.audit_log import AuditLog
from gameclub.models.member import Member

__all__ = [
    "Member",
    "AuditLog",
]
