# src/ladderocr/exceptions.py


class LadderOCRError(Exception):
    """Base exception for the ladderOCR library."""
    code = "error"


class IngestionError(LadderOCRError):
    """Raised when a source file cannot be opened or rendered. Aborts the batch."""
    code = "ingestion_error"


class PasswordRequired(IngestionError):
    """The paged source is encrypted and the password prompt was cancelled."""
    code = "password_required"


class PasswordIncorrect(IngestionError):
    code = "password_incorrect"


class RenderTimeout(LadderOCRError):
    code = "render_timeout"


class RecognitionTimeout(LadderOCRError):
    code = "recognition_timeout"


class RecognitionFailure(LadderOCRError):
    """No attempt produced usable output."""
    code = "recognition_failure"


class BudgetExceeded(LadderOCRError):
    code = "budget_exceeded"


class UserSkipped(LadderOCRError):
    code = "user_skipped"


class EngineInitFailure(LadderOCRError):
    """The persistent engine session could not be created."""
    code = "engine_init_failure"


class UnknownPresetError(LadderOCRError, KeyError):
    code = "unknown_preset"

    def __str__(self):
        return Exception.__str__(self)
