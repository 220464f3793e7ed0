# error_reporter.py
# Centralized error logging and reporting system

import logging
import queue
import sys
import threading
import traceback
from datetime import datetime
import socket
import platform
import json
import hashlib

from framemonkey.constants import APP_NAME, VERSION


# Set up logger
logger = logging.getLogger(APP_NAME)
logger.setLevel(logging.DEBUG)

# Console handler (important messages only)
console_handler = logging.StreamHandler(sys.stdout)
console_handler.setLevel(logging.INFO)
console_formatter = logging.Formatter('%(levelname)s: %(message)s')
console_handler.setFormatter(console_formatter)
logger.addHandler(console_handler)

# Track reported errors to prevent duplicates (per session)
_reported_errors = set()

# Popups raised off the main thread wait here for show_pending_popups()
_pending_popups = queue.Queue()


def configure_logging(level="INFO", log_file=None):
    """
    Apply the configured console level and, optionally, a file handler.

    Args:
        level: Level name for the console handler (e.g. "DEBUG")
        log_file: Optional path of a log file receiving DEBUG and up
    """
    console_handler.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    if log_file:
        for handler in logger.handlers:
            if isinstance(handler, logging.FileHandler) and handler.baseFilename == log_file:
                return
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s %(levelname)s [%(threadName)s] %(message)s'
        ))
        logger.addHandler(file_handler)


def _get_error_hash(title, hostname):
    """
    Create a unique hash for an error based on title and hostname.
    This prevents duplicate reports for the same error in the same session.
    """
    error_key = f"{hostname}:{title}"
    return hashlib.md5(error_key.encode()).hexdigest()


def _has_been_reported(title, hostname):
    """Check if this error has already been reported this session"""
    return _get_error_hash(title, hostname) in _reported_errors


def _mark_as_reported(title, hostname):
    """Mark this error as reported"""
    _reported_errors.add(_get_error_hash(title, hostname))


def reset_reported_errors():
    """Forget every reported error (new session)."""
    _reported_errors.clear()


def get_system_info():
    """Gather system information for error reports"""
    try:
        hostname = socket.gethostname()
    except OSError:
        hostname = "Unknown"

    return {
        "hostname": hostname,
        "platform": platform.system(),
        "platform_release": platform.release(),
        "architecture": platform.machine(),
        "python_version": platform.python_version(),
        "app_version": VERSION,
        "timestamp": datetime.now().isoformat()
    }


def _show_popup(title, message):
    if threading.current_thread() is threading.main_thread():
        _display_popup(title, message)
    else:
        _pending_popups.put((title, message))


def show_pending_popups():
    """Show popups queued by worker threads. Call from the main thread."""
    shown = 0
    while True:
        try:
            title, message = _pending_popups.get_nowait()
        except queue.Empty:
            return shown
        _display_popup(title, message)
        shown += 1


def _display_popup(title, message):
    try:
        from tkinter import Tk, messagebox
        root = Tk()
        root.withdraw()
        messagebox.showerror(title, message)
        root.destroy()
    except Exception:
        # Headless sessions have no display
        logger.error("Could not show error popup to user")


def report_critical_error(error_type, error_message, traceback_str=None, show_popup=False):
    """
    Report a critical error with full logging and an optional popup.
    Prevents duplicate reports for the same error in the same session.

    Args:
        error_type: Type of error (e.g., "Storage", "Startup")
        error_message: Human-readable error message
        traceback_str: Full traceback string (optional)
        show_popup: Whether to show a popup to the user

    Returns:
        Dict with report details
    """
    system_info = get_system_info()
    hostname = system_info['hostname']
    title = f"{error_type}: {error_message[:80]}"

    if _has_been_reported(title, hostname):
        logger.info(f"Skipping duplicate error report: {title}")
        return {
            "error_type": error_type,
            "error_message": error_message,
            "traceback": traceback_str,
            "system_info": system_info,
            "duplicate": True
        }

    _mark_as_reported(title, hostname)

    logger.error(f"CRITICAL ERROR [{error_type}]: {error_message}")
    if traceback_str:
        logger.error(f"Traceback:\n{traceback_str}")
    logger.debug(f"System Info: {json.dumps(system_info, indent=2)}")

    if show_popup:
        _show_popup(
            "Critical Error",
            f"A critical error occurred:\n\n{error_type}: {error_message}\n\n"
            f"Your userscript data may not have been saved."
        )

    return {
        "error_type": error_type,
        "error_message": error_message,
        "traceback": traceback_str,
        "system_info": system_info,
        "duplicate": False
    }


def log_startup_error(exception):
    """Log startup errors with full context"""
    return report_critical_error(
        error_type="Startup Error",
        error_message=str(exception),
        traceback_str=traceback.format_exc(),
        show_popup=False
    )


def log_storage_write_error(key, exception):
    """Log a failed durable write and tell the user with a popup."""
    return report_critical_error(
        error_type="Storage Write Failed",
        error_message=f"Could not persist '{key}': {exception}",
        traceback_str=traceback.format_exc(),
        show_popup=True
    )


def log_chrome_launch_error(exception):
    """Log Chrome launch errors with full context"""
    return report_critical_error(
        error_type="Chrome Launch Failed",
        error_message=str(exception),
        traceback_str=traceback.format_exc(),
        show_popup=False
    )


__all__ = [
    'logger',
    'configure_logging',
    'report_critical_error',
    'log_startup_error',
    'log_storage_write_error',
    'log_chrome_launch_error',
    'show_pending_popups',
    'get_system_info',
]
