"""Exception hierarchy for slimspec."""


class SlimspecError(Exception):
    """Base class for all slimspec errors."""


class InvalidSnapshotError(SlimspecError):
    """Snapshot missing or malformed: no analysis is possible (distinct from no_action)."""


class ResponseValidationError(SlimspecError):
    """Generative output was not valid JSON or broke the slot's verdict/confidence vocabulary."""


class InvalidTransitionError(SlimspecError):
    """A slot run tried to move between phases the state machine does not allow."""


class ConfigurationError(SlimspecError):
    """Configuration value out of range or naming an unknown slot."""
