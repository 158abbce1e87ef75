"""Custom exceptions for the capture guidance core."""

class ApplicationError(Exception):
    """Base application error."""
    pass

class ConfigError(ApplicationError):
    """Configuration-related errors."""
    pass

class FrameFormatError(ApplicationError):
    """Raised when a frame's pixel layout cannot be read as single-channel luma."""
    pass

class DetectionError(ApplicationError):
    """Fiducial detection backend failures."""
    pass

class ValidationError(ApplicationError, ValueError):
    """Data validation errors."""
    pass
