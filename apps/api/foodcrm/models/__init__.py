from foodcrm.models.audit import AuditLog

__all__ = ["AuditLog"]
