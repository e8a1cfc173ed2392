"""
Pipeline errors. All are recoverable and returned to the caller; none roll back anything already committed.
"""
from gigguin.stages import Condition, EventStage


class PipelineError(Exception):
    """Base for event pipeline errors."""


class PipelineNotFound(PipelineError):
    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"No pipeline for event {event_id}")


class TransitionNotAllowed(PipelineError):
    """Raised when target is not a legal next stage (or the pipeline left the expected stage)."""
    def __init__(self, current_stage: EventStage, target_stage: EventStage, reason: str | None = None):
        self.current_stage = current_stage
        self.target_stage = target_stage
        self.reason = reason
        message = f"Cannot transition from {current_stage.value} to {target_stage.value}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class MissingRequiredFields(PipelineError):
    def __init__(self, stage: EventStage, fields: list[str]):
        self.stage = stage
        self.fields = fields
        super().__init__(f"Required fields missing for stage {stage.value}: {', '.join(fields)}")


class ConditionsNotMet(PipelineError):
    def __init__(self, stage: EventStage, conditions: list[Condition]):
        self.stage = stage
        self.conditions = conditions
        names = ", ".join(c.value for c in conditions)
        super().__init__(f"Conditions not met for stage {stage.value}: {names}")


class ConcurrencyConflict(PipelineError):
    """Raised when the optimistic write lost the race. Reload and retry, or surface to the user."""
    def __init__(self, event_id: str, expected_version: int):
        self.event_id = event_id
        self.expected_version = expected_version
        super().__init__(f"Pipeline for event {event_id} changed since version {expected_version}")
