"""
Logging helpers shared by the chatvault apps.

Every area gets an ``AppLogger`` that prefixes messages with the chat thread
they concern and attaches structured context for the JSON formatter.
"""

import logging
from typing import Any, Dict, Optional

SECURITY_LOGGER = 'chatvault.security'
ALERTS_LOGGER = 'alerts'


class AppLogger:
    """Thread-aware wrapper around a stdlib logger."""

    def __init__(self, logger_name: str):
        self.logger = logging.getLogger(logger_name)
        self.security_logger = logging.getLogger(SECURITY_LOGGER)
        self.alerts_logger = logging.getLogger(ALERTS_LOGGER)

    def debug(self, message: str, thread_id: Optional[str] = None, extra_data: Optional[Dict[str, Any]] = None):
        self._emit(self.logger, logging.DEBUG, message, thread_id, extra_data)

    def info(self, message: str, thread_id: Optional[str] = None, extra_data: Optional[Dict[str, Any]] = None):
        self._emit(self.logger, logging.INFO, message, thread_id, extra_data)

    def warning(self, message: str, thread_id: Optional[str] = None, extra_data: Optional[Dict[str, Any]] = None):
        self._emit(self.logger, logging.WARNING, message, thread_id, extra_data)

    def error(self, message: str, thread_id: Optional[str] = None, extra_data: Optional[Dict[str, Any]] = None):
        self._emit(self.logger, logging.ERROR, message, thread_id, extra_data)

    def critical(self, message: str, thread_id: Optional[str] = None, extra_data: Optional[Dict[str, Any]] = None):
        """Log at CRITICAL and raise an alert for operators."""
        self._emit(self.logger, logging.CRITICAL, message, thread_id, extra_data)
        self._emit(self.alerts_logger, logging.ERROR, f"CRITICAL: {message}", thread_id, extra_data)

    def security_event(self, message: str, thread_id: Optional[str] = None, extra_data: Optional[Dict[str, Any]] = None):
        """Vault lock/unlock and verification failures go to the security log."""
        self._emit(self.security_logger, logging.WARNING, f"SECURITY EVENT: {message}", thread_id, extra_data)

    def thread_activity(self, action: str, thread_id: str, details: Optional[str] = None):
        message = f"Thread {thread_id} action: {action}"
        if details:
            message += f" - {details}"
        self.info(message, thread_id)

    def encryption_event(self, event: str, thread_id: Optional[str] = None, success: bool = True,
                         extra_data: Optional[Dict[str, Any]] = None):
        """Re-encoding of stored data; failures are logged at ERROR."""
        if success:
            self.info(f"ENCRYPTION SUCCESS: {event}", thread_id, extra_data)
        else:
            self.error(f"ENCRYPTION FAILURE: {event}", thread_id, extra_data)

    @staticmethod
    def _emit(target: logging.Logger, level: int, message: str, thread_id: Optional[str],
              extra_data: Optional[Dict[str, Any]]):
        if thread_id:
            message = f"[Thread: {thread_id}] {message}"

        context: Dict[str, Any] = {}
        if thread_id is not None:
            context['thread_id'] = thread_id
        if extra_data:
            context.update(extra_data)
            message += " | Extra: " + ", ".join(f"{key}: {value}" for key, value in extra_data.items())

        if context:
            target.log(level, message, extra={'context': context})
        else:
            target.log(level, message)


def get_accounts_logger():
    return AppLogger('accounts')


def get_vault_logger():
    return AppLogger('vault')


def get_chats_logger():
    return AppLogger('chats')


def get_assistant_logger():
    return AppLogger('assistant')


def get_core_logger():
    return AppLogger('core')
