#!/usr/bin/env python3
"""
Logging Module for Preseed ISO Builder

This module provides structured logging for a remastering session: a
human-readable log file, a JSON-lines log, an error log, console output and
a per-session summary.
"""

import logging
import json
import time
import sys
from typing import Dict, Any, Optional, List
from pathlib import Path
from datetime import datetime
from dataclasses import dataclass, asdict
from enum import Enum


class LogLevel(Enum):
    """Log levels for remastering operations."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogCategory(Enum):
    """Categories for the stages of a remastering run."""
    SYSTEM = "system"
    DEPENDENCIES = "dependencies"
    FETCH = "fetch"
    CREDENTIALS = "credentials"
    PRESEED = "preseed"
    IMAGE = "image"
    CLEANUP = "cleanup"
    USER_ACTION = "user_action"


@dataclass
class LogEntry:
    """Structured log entry for remastering operations."""
    timestamp: str
    level: str
    category: str
    operation: str
    message: str
    details: Optional[Dict[str, Any]] = None
    duration_ms: Optional[int] = None
    success: Optional[bool] = None
    error_code: Optional[str] = None


class _BelowErrorFilter(logging.Filter):
    def filter(self, record):
        return record.levelno < logging.ERROR


class PreseedLogger:
    """Session logger for the preseed ISO builder."""

    def __init__(self, log_dir: Optional[Path] = None, session_id: Optional[str] = None,
                 console: bool = True):
        """
        Initialize the session logger.

        Args:
            log_dir: Directory for log files (default: ~/.preseed_iso_logs)
            session_id: Unique session identifier (default: timestamp-based)
            console: Whether to echo INFO and above to the terminal
        """
        self.log_dir = Path(log_dir) if log_dir else Path.home() / ".preseed_iso_logs"
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self.session_id = session_id or f"preseed_{int(time.time())}"
        self.session_start = time.time()

        self.main_log_file = self.log_dir / f"{self.session_id}.log"
        self.json_log_file = self.log_dir / f"{self.session_id}.json"
        self.error_log_file = self.log_dir / f"{self.session_id}_errors.log"

        self._setup_loggers(console)

        self.operations: List[LogEntry] = []
        self.current_operation: Optional[str] = None
        self.current_category: Optional[LogCategory] = None
        self.operation_start_time: Optional[float] = None

        self.log_debug(LogCategory.SYSTEM, "session_start",
                       f"Preseed ISO session started: {self.session_id}")

    def _setup_loggers(self, console: bool):
        """Set up Python logging infrastructure."""
        self.main_logger = logging.getLogger(f"preseed_iso.{self.session_id}")
        self.main_logger.setLevel(logging.DEBUG)
        self.main_logger.propagate = False
        self.main_logger.handlers.clear()

        main_handler = logging.FileHandler(self.main_log_file)
        main_handler.setLevel(logging.DEBUG)
        main_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))
        self.main_logger.addHandler(main_handler)

        if console:
            console_formatter = logging.Formatter('%(levelname)s: %(message)s')

            stdout_handler = logging.StreamHandler(sys.stdout)
            stdout_handler.setLevel(logging.INFO)
            stdout_handler.addFilter(_BelowErrorFilter())
            stdout_handler.setFormatter(console_formatter)
            self.main_logger.addHandler(stdout_handler)

            # Fatal diagnostics belong on the error stream
            stderr_handler = logging.StreamHandler(sys.stderr)
            stderr_handler.setLevel(logging.ERROR)
            stderr_handler.setFormatter(console_formatter)
            self.main_logger.addHandler(stderr_handler)

        self.error_logger = logging.getLogger(f"preseed_iso.{self.session_id}.errors")
        self.error_logger.setLevel(logging.WARNING)
        self.error_logger.propagate = False
        self.error_logger.handlers.clear()

        error_handler = logging.FileHandler(self.error_log_file)
        error_handler.setLevel(logging.WARNING)
        error_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(levelname)s - %(message)s\n%(pathname)s:%(lineno)d\n'
        ))
        self.error_logger.addHandler(error_handler)

    def start_operation(self, category: LogCategory, operation: str, message: str,
                        details: Optional[Dict[str, Any]] = None):
        """
        Start tracking a new operation.

        Args:
            category: Operation category
            operation: Operation name
            message: Description of the operation
            details: Additional operation details
        """
        self.current_operation = operation
        self.current_category = category
        self.operation_start_time = time.time()

        self.log_info(category, operation, message, details)

    def end_operation(self, success: bool, message: str = None,
                      error_code: str = None, details: Optional[Dict[str, Any]] = None):
        """
        End the current operation and log results.

        Args:
            success: Whether the operation succeeded
            message: Final message for the operation
            error_code: Error code if operation failed
            details: Additional details about the operation result
        """
        if not self.current_operation or not self.operation_start_time:
            self.log_warning(LogCategory.SYSTEM, "logging_error",
                             "end_operation called without active operation")
            return

        duration_ms = int((time.time() - self.operation_start_time) * 1000)

        level = LogLevel.DEBUG if success else LogLevel.ERROR
        final_message = message or f"{'Completed' if success else 'Failed'}: {self.current_operation}"

        self._log_entry(level, self.current_category or LogCategory.SYSTEM,
                        self.current_operation, final_message, details,
                        duration_ms, success, error_code)

        self.current_operation = None
        self.current_category = None
        self.operation_start_time = None

    def log_debug(self, category: LogCategory, operation: str, message: str,
                  details: Optional[Dict[str, Any]] = None):
        """Log debug message."""
        self._log_entry(LogLevel.DEBUG, category, operation, message, details)

    def log_info(self, category: LogCategory, operation: str, message: str,
                 details: Optional[Dict[str, Any]] = None):
        """Log info message."""
        self._log_entry(LogLevel.INFO, category, operation, message, details)

    def log_warning(self, category: LogCategory, operation: str, message: str,
                    details: Optional[Dict[str, Any]] = None):
        """Log warning message."""
        self._log_entry(LogLevel.WARNING, category, operation, message, details)

    def log_error(self, category: LogCategory, operation: str, message: str,
                  details: Optional[Dict[str, Any]] = None, error_code: str = None):
        """Log error message."""
        self._log_entry(LogLevel.ERROR, category, operation, message, details,
                        error_code=error_code)

    def log_critical(self, category: LogCategory, operation: str, message: str,
                     details: Optional[Dict[str, Any]] = None, error_code: str = None):
        """Log critical message."""
        self._log_entry(LogLevel.CRITICAL, category, operation, message, details,
                        error_code=error_code)

    def _log_entry(self, level: LogLevel, category: LogCategory, operation: str,
                   message: str, details: Optional[Dict[str, Any]] = None,
                   duration_ms: Optional[int] = None, success: Optional[bool] = None,
                   error_code: Optional[str] = None):
        """Create and store a log entry."""
        entry = LogEntry(
            timestamp=datetime.now().isoformat(),
            level=level.value,
            category=category.value,
            operation=operation,
            message=message,
            details=details,
            duration_ms=duration_ms,
            success=success,
            error_code=error_code
        )

        self.operations.append(entry)

        # Console and text file only get the message; details go to the JSON log
        if level == LogLevel.DEBUG:
            log_message = f"[{category.value}:{operation}] {message}"
            if details:
                log_message += f" | Details: {json.dumps(details, default=str)}"
            self.main_logger.debug(log_message)
        elif level == LogLevel.INFO:
            self.main_logger.info(message)
        elif level == LogLevel.WARNING:
            self.main_logger.warning(message)
            self.error_logger.warning(f"[{category.value}:{operation}] {message}")
        elif level == LogLevel.ERROR:
            self.main_logger.error(message)
            self.error_logger.error(f"[{category.value}:{operation}] {message}")
        elif level == LogLevel.CRITICAL:
            self.main_logger.critical(message)
            self.error_logger.critical(f"[{category.value}:{operation}] {message}")

        self._write_json_entry(entry)

    def _write_json_entry(self, entry: LogEntry):
        """Write log entry to JSON file."""
        try:
            with open(self.json_log_file, 'a') as f:
                json.dump(asdict(entry), f, default=str)
                f.write('\n')
        except OSError as e:
            self.main_logger.error(f"Failed to write JSON log entry: {e}")

    def log_command_execution(self, command: List[str], return_code: int,
                              stdout: str = None, stderr: str = None):
        """Log command execution details."""
        details = {
            "command": command,
            "return_code": return_code,
            "stdout": stdout[:1000] if stdout else None,  # Limit output size
            "stderr": stderr[:1000] if stderr else None
        }

        if return_code == 0:
            self.log_debug(LogCategory.SYSTEM, "command_exec",
                           f"Command executed successfully: {' '.join(command)}", details)
        else:
            self.log_error(LogCategory.SYSTEM, "command_exec",
                           f"Command failed: {' '.join(command)}", details,
                           error_code=f"EXIT_{return_code}")

    def log_progress_update(self, operation: str, progress_percent: float,
                            message: str = None):
        """Log progress update for long-running operations."""
        details = {"progress_percent": progress_percent}
        if message:
            details["progress_message"] = message

        self.log_debug(LogCategory.SYSTEM, operation,
                       f"Progress: {progress_percent:.1f}%", details)

    def create_session_summary(self) -> Dict[str, Any]:
        """Create a summary of the current session."""
        session_duration = time.time() - self.session_start

        category_counts = {}
        success_counts = {"success": 0, "failure": 0, "unknown": 0}
        error_codes = {}

        for entry in self.operations:
            category_counts[entry.category] = category_counts.get(entry.category, 0) + 1

            if entry.success is True:
                success_counts["success"] += 1
            elif entry.success is False:
                success_counts["failure"] += 1
            else:
                success_counts["unknown"] += 1

            if entry.error_code:
                error_codes[entry.error_code] = error_codes.get(entry.error_code, 0) + 1

        return {
            "session_id": self.session_id,
            "start_time": datetime.fromtimestamp(self.session_start).isoformat(),
            "duration_seconds": int(session_duration),
            "total_operations": len(self.operations),
            "category_counts": category_counts,
            "success_counts": success_counts,
            "error_codes": error_codes,
            "log_files": {
                "main_log": str(self.main_log_file),
                "json_log": str(self.json_log_file),
                "error_log": str(self.error_log_file)
            }
        }

    def finalize_session(self, success: bool = True, final_message: str = None):
        """Finalize the logging session and write the summary file."""
        summary = self.create_session_summary()

        final_msg = final_message or f"Session {'completed successfully' if success else 'ended with errors'}"

        self.log_debug(LogCategory.SYSTEM, "session_end", final_msg, {
            "session_summary": summary,
            "success": success
        })

        summary_file = self.log_dir / f"{self.session_id}_summary.json"
        try:
            with open(summary_file, 'w') as f:
                json.dump(summary, f, indent=2, default=str)
        except OSError as e:
            self.main_logger.error(f"Failed to write session summary: {e}")

        for handler in self.main_logger.handlers + self.error_logger.handlers:
            handler.flush()

    def close(self):
        """Detach and close all handlers owned by this session."""
        for log in (self.main_logger, self.error_logger):
            for handler in list(log.handlers):
                handler.close()
                log.removeHandler(handler)

    def get_recent_errors(self, limit: int = 10) -> List[LogEntry]:
        """Get recent error entries."""
        errors = [entry for entry in self.operations
                  if entry.level in [LogLevel.ERROR.value, LogLevel.CRITICAL.value]]
        return errors[-limit:]


def create_progress_callback(logger: PreseedLogger, category: LogCategory,
                             operation: str) -> callable:
    """
    Create a progress callback function for long-running steps.

    Args:
        logger: PreseedLogger instance
        category: Log category for progress updates
        operation: Operation name

    Returns:
        Callback function that logs progress updates
    """
    def progress_callback(message: str, progress: float = None):
        if progress is not None:
            logger.log_progress_update(operation, progress, message)
        else:
            logger.log_debug(category, operation, message)

    return progress_callback
