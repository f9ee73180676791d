"""Operational event logging for audit configuration and data access.

Events are plain-text JSON records about what the engine did (setup, removal,
decrypt attempts), not the encrypted audit trail itself. Writing an event
never raises: the audit engine must keep working when the event sink does not.
"""

import json
import logging
from datetime import datetime
from logging.handlers import RotatingFileHandler
from typing import Optional

from ciphertrail.settings import Settings, get_settings
from ciphertrail.utils import metrics

logger = logging.getLogger(__name__)

SYSTEM_LOGGER_NAME = "ciphertrail.system"
DEFAULT_ACTOR = "system"


class SystemAuditLogger:
    """Fire-and-forget structured event logger."""

    def __init__(self, settings: Optional[Settings] = None, event_logger: Optional[logging.Logger] = None):
        """Initialize system audit logger."""
        self.settings = settings or get_settings()
        self.logger = event_logger or logging.getLogger(SYSTEM_LOGGER_NAME)
        if self.settings.system_log_path:
            self._attach_file_handler(self.settings.system_log_path)

    def _attach_file_handler(self, path: str) -> None:
        for handler in self.logger.handlers:
            if isinstance(handler, RotatingFileHandler) and handler.baseFilename.endswith(path):
                return
        try:
            handler = RotatingFileHandler(
                path,
                maxBytes=self.settings.system_log_max_bytes,
                backupCount=self.settings.system_log_backup_count,
                encoding="utf-8",
            )
        except OSError as e:
            logger.warning(f"Cannot open system event log {path}: {e}")
            return
        handler.setFormatter(logging.Formatter("%(message)s"))
        self.logger.addHandler(handler)

    def log_event(
        self,
        action: str,
        subject: Optional[str],
        actor: Optional[str] = None,
        success: bool = True,
        duration_ms: Optional[float] = None,
        error=None,
        **details,
    ) -> Optional[dict]:
        """Write one event; return the record, or None if it could not be written."""
        try:
            record = {
                "timestamp": datetime.utcnow().isoformat(),
                "action": action,
                "subject": subject,
                "actor": actor or DEFAULT_ACTOR,
                "success": bool(success),
                "duration_ms": round(duration_ms, 2) if duration_ms is not None else None,
                "error": str(error) if error else None,
                "details": details,
            }
            self.logger.log(
                logging.INFO if success else logging.WARNING,
                json.dumps(record, default=str, sort_keys=True),
            )
            metrics.system_events.labels(action=action, success=str(bool(success)).lower()).inc()
            return record
        except Exception as e:
            logger.warning(f"Failed to write system event {action!r}: {e}")
            metrics.system_event_errors.inc()
            return None

    def log_audit_config(self, operation: str, table_name: str, **kwargs) -> Optional[dict]:
        """Setup/removal of auditing on a table."""
        return self.log_event(f"audit_config.{operation}", table_name, **kwargs)

    def log_data_access(self, audit_table_name: str, decrypted: bool = False, **kwargs) -> Optional[dict]:
        """Read of a shadow table."""
        action = "data_access.decrypt" if decrypted else "data_access.read"
        return self.log_event(action, audit_table_name, **kwargs)

    def log_security_event(self, event: str, subject: Optional[str], **kwargs) -> Optional[dict]:
        """Key validation failures and similar events."""
        kwargs.setdefault("success", False)
        return self.log_event(f"security.{event}", subject, **kwargs)

