# Purpose: error taxonomy shared by the capture pipeline, the OCR scheduler and the API
# expected outcomes (skips, size limits, low confidence) are values, not raised errors,
# except where a caller explicitly asks for them to be raised


class ClipKeepError(Exception):
    """Base class for every ClipKeep error"""


class RuntimeUnavailable(ClipKeepError):
    """Storage engine is not initialized (or was closed)"""

    def __init__(self, message: str = "Core runtime unavailable"):
        super().__init__(message)


class SizeLimitExceeded(ClipKeepError):
    """Payload is bigger than clipboard.maxContentSizeBytes"""

    def __init__(self, kind: str, size: int, limit: int):
        self.kind = kind
        self.size = size
        self.limit = limit
        super().__init__(f"{kind} payload of {size} bytes exceeds limit of {limit} bytes")


class ClassificationSkip(ClipKeepError):
    """Clipboard snapshot that must not be captured"""

    FILE_REFERENCE = "file-reference"
    SENSITIVE_MARKER = "sensitive-marker"
    UNSUPPORTED = "unsupported"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"clipboard snapshot skipped: {reason}")


class DecodeError(ClipKeepError):
    """Malformed JSON / text coming back across the storage boundary"""


class OcrFailure(ClipKeepError):
    """OCR task could not produce a result. Terminal for the task"""


class OcrDecodeFailure(OcrFailure):
    """Image file could not be opened or decoded"""


class OcrEngineFailure(OcrFailure):
    """Recognizer raised while running"""
