class LoopEngineError(Exception):
    """Base class for all exceptions in the loop engine."""
    pass

class ConfigurationError(LoopEngineError):
    """Raised when there is a configuration-related error."""
    pass

class DefinitionError(LoopEngineError):
    """Raised when a loop definition fails validation.

    Carries every collected ``ValidationError`` so callers can surface the
    full list instead of the first failure.
    """

    def __init__(self, errors, loop_id=None):
        self.errors = list(errors)
        self.loop_id = loop_id
        count = len(self.errors)
        label = f"'{loop_id}'" if loop_id else "definition"
        summary = "; ".join(str(e) for e in self.errors[:3])
        if count > 3:
            summary += f"; ... ({count - 3} more)"
        super().__init__(f"Loop {label} failed validation with {count} error(s): {summary}")

class TransitionError(LoopEngineError):
    """Raised for an illegal transition request; execution state is left unchanged."""
    pass

class LoopLoadError(LoopEngineError):
    """Raised when a loop document cannot be read or parsed."""
    pass

class SkillRegistryError(LoopEngineError):
    """Raised when a skill document cannot be read or parsed."""
    pass

class UnknownRunError(LoopEngineError, KeyError):
    """Raised when a run id is not registered with the engine."""

    def __str__(self):
        return str(self.args[0]) if self.args else "unknown run"

class UnknownLoopError(LoopEngineError, KeyError):
    """Raised when a loop id is not present in the definition catalog."""

    def __str__(self):
        return str(self.args[0]) if self.args else "unknown loop"
