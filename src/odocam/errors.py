"""Failures reported by the odometer pipeline.

All OCR failures are terminal: nothing is retried and no fallback value is
guessed. The caller is expected to offer manual entry instead.
"""


class OCRError(Exception):
    """Base class for mileage recognition failures."""

    message = "Mileage recognition failed"

    def __init__(self, message: str = ""):
        super().__init__(message or self.message)


class ImageProcessingFailed(OCRError):
    message = "Failed to process the image"


class NoTextFound(OCRError):
    message = "No text could be recognized in the image"


class NoValidMileageFound(OCRError):
    message = "No valid mileage number was found"


class InvalidMileage(OCRError):
    """Selected value failed the final bounds check."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid mileage: {reason}")


class RecognitionCancelled(Exception):
    """The caller cancelled the run before recognition finished."""
