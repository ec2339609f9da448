#!/usr/bin/env python3
"""
Exception hierarchy for AI PR review.

Every error carries an optional fix hint that is shown to the user.
"""

from typing import Optional


class ReviewError(Exception):
    """Base exception with helpful error messages."""
    def __init__(self, message: str, fix_hint: str = None):
        self.message = message
        self.fix_hint = fix_hint
        super().__init__(self.message)

    def __str__(self):
        if self.fix_hint:
            return f"{self.message}\n\n💡 FIX: {self.fix_hint}"
        return self.message

class ConfigError(ReviewError):
    """Configuration errors."""
    pass

class SecurityError(ReviewError):
    """Credential validation errors."""
    pass

class APIError(ReviewError):
    """GitHub API communication errors."""
    def __init__(self, message: str, fix_hint: str = None, status: Optional[int] = None):
        self.status = status
        super().__init__(message, fix_hint)

class GenerationError(ReviewError):
    """A model provider rejected or failed a generation request."""
    def __init__(self, message: str, status: Optional[int] = None, model: str = None, fix_hint: str = None):
        self.status = status
        self.model = model
        super().__init__(message, fix_hint)

class ExhaustedFailure(ReviewError):
    """Every candidate model failed; wraps the last error observed."""
    def __init__(self, last_error: Exception, model: str, attempts: int):
        self.last_error = last_error
        self.model = model
        self.attempts = attempts
        super().__init__(
            f"All candidate models failed after {attempts} attempts; "
            f"last tried {model}: {getattr(last_error, 'message', str(last_error))}",
            "Check provider status, quota and the configured model list"
        )

class InvocationCancelled(ReviewError):
    """The caller cancelled the invocation between attempts."""
    def __init__(self, model: Optional[str], attempts: int, reason: str = "cancelled"):
        self.model = model
        self.attempts = attempts
        self.reason = reason
        where = f" before trying {model}" if model else ""
        super().__init__(f"Model invocation {reason}{where} after {attempts} attempts")
