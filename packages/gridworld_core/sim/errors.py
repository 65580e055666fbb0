"""Error taxonomy for the turn resolution engine."""

from __future__ import annotations


class TurnEngineError(RuntimeError):
    error_code = "turn_engine_error"

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        super().__init__(message)
        self.stage = stage


class MissingCredentialError(TurnEngineError):
    error_code = "missing_api_key"


class EmptyHistoryError(TurnEngineError):
    error_code = "empty_history"


class TurnFailedError(TurnEngineError):
    error_code = "turn_failed"


class TurnInProgressError(TurnEngineError):
    error_code = "turn_in_progress"


class ScenarioGenerationError(TurnEngineError):
    error_code = "invalid_scenario"


class SessionNotFoundError(TurnEngineError):
    error_code = "session_not_found"


def require_api_key(api_key: str | None) -> str:
    if api_key is None or not str(api_key).strip():
        raise MissingCredentialError("An API key is required to call the oracle", stage="precondition")
    return api_key
