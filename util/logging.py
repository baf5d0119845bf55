"""
Structured operational logging and the enrollment audit trail.
"""

import json
import logging
import logging.handlers
import re
import time
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

_CONTROL_PATTERN = re.compile(r"[\x00-\x1F\x7F]")

MAX_LOG_FIELD_LENGTH = 500


def sanitize_log_data(data: Any) -> str:
    """Make a value safe for a single log line."""
    if data is None or data == "":
        return ""
    text = str(data)
    text = text.replace("\n", " ").replace("\r", " ").replace("\t", " ")
    text = _CONTROL_PATTERN.sub("", text)
    return text[:MAX_LOG_FIELD_LENGTH]


class StructuredLogger:
    """Structured logger for enrollment and store operations."""

    def __init__(self, name: str = "munki_enroll"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None, level: int = logging.INFO):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        self.logger.log(level, message)

    def log_record_operation(self, function: str, record_id: str, status: str = "success", details: Dict[str, Any] = None):
        """Log the outcome of an enroll/update/checkin/fetch."""
        log_details = {"record_id": record_id}
        if details:
            log_details.update(details)

        level = logging.INFO if status == "success" else logging.WARNING
        self.log_operation(f"manifest.{function}", status, log_details, level=level)

    def log_store_operation(self, operation: str, record_id: str, status: str = "success", details: Dict[str, Any] = None):
        """Log a record store read or write."""
        log_details = {"record_id": record_id}
        if details:
            log_details.update(details)

        level = logging.DEBUG if status == "success" else logging.WARNING
        self.log_operation(f"store.{operation}", status, log_details, level=level)

    # Standard logging methods for compatibility
    def info(self, message: str) -> None:
        """Log an info message."""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log a warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log an error message."""
        self.logger.error(message)

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)


class AuditLogger:
    """
    Audit sink for enrollment requests.

    Each request outcome becomes one JSON line:

        {"timestamp": ..., "result": "SUCCESS - RECORD CREATED",
         "recordname": ..., "displayname": ..., "uuid": ...,
         "catalogs": "production,testing", "manifests": "Management/Mandatory",
         "ip": ..., "user": ..., "user_agent": ...}

    Lines go to a size-rotated file when a path is given and, optionally, a
    one-line summary goes to syslog.
    """

    def __init__(self, name: str = "munki_enroll.audit", log_path: Optional[Path] = None,
                 max_bytes: int = 10485760, backup_count: int = 5, use_syslog: bool = False):
        # One logger per audit file
        if log_path is not None:
            log_path = Path(log_path).resolve()
            self.logger = logging.getLogger(f"{name}[{log_path}]")
        else:
            self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)
        self.logger.propagate = False

        if not self.logger.handlers and log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            handler = logging.handlers.RotatingFileHandler(
                log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
            )
            handler.setFormatter(logging.Formatter('%(message)s'))
            self.logger.addHandler(handler)

        self.syslog = None
        if use_syslog:
            self.syslog = logging.getLogger(f"{name}.syslog")
            self.syslog.setLevel(logging.INFO)
            self.syslog.propagate = False
            if not self.syslog.handlers:
                try:
                    syslog_handler = logging.handlers.SysLogHandler(
                        address="/dev/log",
                        facility=logging.handlers.SysLogHandler.LOG_LOCAL0,
                    )
                except OSError as e:
                    logging.getLogger(__name__).warning(f"Syslog unavailable, audit mirror disabled: {e}")
                    self.syslog = None
                else:
                    syslog_handler.setFormatter(logging.Formatter('munki-enroll: %(message)s'))
                    self.syslog.addHandler(syslog_handler)

    def build_entry(self, result: str, record_id: str = "", display_name: Optional[str] = None,
                    identity_token: Optional[str] = None, catalogs: Iterable[str] = (),
                    manifests: Iterable[str] = (), ip: Optional[str] = None,
                    user: Optional[str] = None, user_agent: Optional[str] = None) -> Dict[str, str]:
        """Build a sanitized audit entry."""
        return {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "result": sanitize_log_data(result),
            "recordname": sanitize_log_data(record_id),
            "displayname": sanitize_log_data(display_name),
            "uuid": sanitize_log_data(identity_token),
            "catalogs": ",".join(filter(None, (sanitize_log_data(c) for c in catalogs))),
            "manifests": ",".join(filter(None, (sanitize_log_data(m) for m in manifests))),
            "ip": sanitize_log_data(ip or "unknown"),
            "user": sanitize_log_data(user or "anonymous"),
            "user_agent": sanitize_log_data((user_agent or "unknown")[:100]),
        }

    def log(self, result: str, **fields: Any) -> Dict[str, str]:
        """Write one audit entry and return it."""
        entry = self.build_entry(result, **fields)
        self.logger.info(json.dumps(entry))

        if self.syslog is not None:
            self.syslog.info(
                f"{entry['result']} - {entry['recordname']} "
                f"(uuid: {entry['uuid']}, ip: {entry['ip']}, user: {entry['user']})"
            )

        return entry


# Global logger instance
logger = StructuredLogger()
