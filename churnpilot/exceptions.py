"""Error taxonomy for ingestion, scoring and playbook dispatch."""

from typing import Optional


class ChurnPilotError(Exception):
    """Base class for all ChurnPilot errors."""

    pass


class ValidationError(ChurnPilotError):
    """An ingestion record's identity field could not be resolved via any alias."""

    def __init__(self, fields: list[str], aliases: Optional[dict[str, list[str]]] = None):
        self.fields = list(fields)
        self.aliases = aliases or {}
        super().__init__(f"Could not resolve required field(s): {', '.join(self.fields)}")

    def to_dict(self) -> dict:
        return {
            "error": "validation_error",
            "message": str(self),
            "fields": self.fields,
            "aliases": self.aliases,
        }


class ScoringError(ChurnPilotError):
    """The scoring engine raised on a normalized record. Always a defect."""

    def __init__(self, customer_id: str, cause: Exception):
        self.customer_id = customer_id
        self.cause = cause
        super().__init__(f"Scoring failed for customer {customer_id}: {cause!r}")


class EvaluationError(ChurnPilotError):
    """A playbook definition is malformed. Logged, never propagated."""

    def __init__(self, playbook_id: Optional[str], message: str):
        self.playbook_id = playbook_id
        super().__init__(f"Playbook {playbook_id or '<unknown>'}: {message}")


class DispatchError(ChurnPilotError):
    """A single action's external side effect failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class PersistenceError(ChurnPilotError):
    """The record or trigger-log store rejected a write."""

    pass
