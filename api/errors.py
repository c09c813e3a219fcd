"""
Error handling utilities for sanitizing and truncating error messages.

Prevents internal implementation details from being exposed to API clients
while still logging detailed errors for debugging.
"""
import logging
import re
from typing import Optional

from config import ERROR_SUMMARY_MAX_LENGTH

logger = logging.getLogger(__name__)

# Patterns that indicate internal details
INTERNAL_PATTERNS = [
    r'/home/\w+/',           # Home directory paths
    r'/mnt/\w+/',            # Mount paths
    r'/tmp/\w+',             # Temp paths
    r'/var/\w+/',            # Var paths
    r'line \d+',             # Line numbers in stack traces
    r'File "[^"]+\.py"',     # Python file paths
    r'https?://\S+',         # URLs (signed source URLs, storage endpoints)
    r'Permission denied',    # System errors
    r'No such file or directory',  # System errors with paths
    r'UNIQUE constraint failed',   # Database internals
    r'sqlite3?\.',           # SQLite details
    r'Error: .+\.py:\d+',    # Python error traces
]

# Generic user-friendly messages for common error types
ERROR_MESSAGES = {
    "ffmpeg": "Frame extraction failed at this position.",
    "ffprobe": "Could not read the video source. The file may be corrupted or unreachable.",
    "timeout": "The operation timed out.",
    "deadline": "Generation deadline exceeded before this candidate was scored.",
    "beyond_duration": "Seek time is beyond the end of the video.",
    "decode": "Frame could not be decoded.",
    "upload": "Upload to object storage failed. It can be retried.",
    "ai": "AI scoring unavailable, scored from pixels only.",
    "database": "A database error occurred. Please try again.",
    "permission": "A file access error occurred. Please contact support.",
    "general": "An error occurred while processing your request. Please try again.",
}


def truncate_string(value: Optional[str], max_length: int) -> Optional[str]:
    """Truncate a string to max_length characters, marking truncation with '...'."""
    if value is None:
        return None
    if len(value) <= max_length:
        return value
    if max_length <= 3:
        return value[:max_length]
    return value[: max_length - 3] + "..."


def truncate_error(error: Optional[str], max_length: int = ERROR_SUMMARY_MAX_LENGTH) -> Optional[str]:
    """Collapse whitespace in an error message and truncate it.

    ffmpeg stderr is multi-line and mostly banner noise; the last lines carry
    the actual failure, so the tail is kept.
    """
    if error is None:
        return None
    lines = [line.strip() for line in error.strip().splitlines() if line.strip()]
    if not lines:
        return ""
    collapsed = " | ".join(lines[-3:])
    return truncate_string(collapsed, max_length)


def sanitize_error_message(
    error: Optional[str],
    log_original: bool = True,
    context: str = ""
) -> Optional[str]:
    """
    Sanitize an error message for safe display to API clients.

    Args:
        error: The original error message (may contain internal details)
        log_original: Whether to log the original message before sanitizing
        context: Additional context for logging (e.g., "video_key=abc")

    Returns:
        A sanitized, user-friendly error message, or None if input was None
    """
    if error is None:
        return None

    # Log the original error for debugging
    if log_original and error:
        log_msg = "Original error"
        if context:
            log_msg += f" ({context})"
        log_msg += f": {error}"
        logger.warning(log_msg)

    error_lower = error.lower()

    if "deadline" in error_lower:
        return ERROR_MESSAGES["deadline"]

    if "beyond" in error_lower and "duration" in error_lower:
        return ERROR_MESSAGES["beyond_duration"]

    if "ffprobe" in error_lower:
        return ERROR_MESSAGES["ffprobe"]

    if "ffmpeg" in error_lower or "frame extraction" in error_lower:
        if "timeout" in error_lower or "timed out" in error_lower:
            return ERROR_MESSAGES["timeout"]
        return ERROR_MESSAGES["ffmpeg"]

    if "decode" in error_lower or "cannot identify image" in error_lower:
        return ERROR_MESSAGES["decode"]

    if "upload" in error_lower:
        return ERROR_MESSAGES["upload"]

    if "ai scor" in error_lower:
        return ERROR_MESSAGES["ai"]

    if "sqlite" in error_lower or "database" in error_lower or "constraint" in error_lower:
        return ERROR_MESSAGES["database"]

    if "permission" in error_lower:
        return ERROR_MESSAGES["permission"]

    # Check if the error contains any internal patterns
    for pattern in INTERNAL_PATTERNS:
        if re.search(pattern, error, re.IGNORECASE):
            return ERROR_MESSAGES["general"]

    # Short messages without path-like segments are safe to show as-is
    if len(error) < ERROR_SUMMARY_MAX_LENGTH and "/" not in error and "\\" not in error:
        return error

    return ERROR_MESSAGES["general"]
