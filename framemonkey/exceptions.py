"""Custom exception classes for FrameMonkey."""


class FrameMonkeyError(Exception):
    """Base exception for FrameMonkey errors."""
    pass


class ScriptParseError(FrameMonkeyError):
    """Raised when a userscript source cannot be turned into a script."""
    pass


class PatternCompileError(FrameMonkeyError):
    """Raised when a match/include/exclude pattern is malformed."""

    def __init__(self, pattern, reason):
        super().__init__(f"Invalid pattern {pattern!r}: {reason}")
        self.pattern = pattern
        self.reason = reason


class StorageError(FrameMonkeyError):
    """Raised when the backing key-value store rejects an operation."""
    pass


class CrossOriginAccessError(FrameMonkeyError):
    """Raised when a frame's document cannot be reached. Expected, not a failure."""
    pass


class FrameDetachedError(FrameMonkeyError):
    """Raised when the frame element is no longer part of the host document."""
    pass
