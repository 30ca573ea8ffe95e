"""Exception taxonomy for game analysis.

Engine-tier errors are fatal to an analysis run and surface as a single
terminal error event.  Coaching-tier errors never leave the coaching
dispatcher: they are logged and replaced by a templated explanation.
"""


class InvalidGame(ValueError):
    """The submitted game text could not be turned into a move list."""


class EngineError(RuntimeError):
    """Base class for failures of the engine subprocess."""


class EngineUnavailable(EngineError):
    """The engine failed to spawn, failed its handshake, or exited."""


class EngineTimeout(EngineError):
    """A single evaluation exceeded its watchdog."""


class CoachingUnavailable(Exception):
    """The text-generation service could not produce a usable answer."""


class MalformedStructuredOutput(CoachingUnavailable):
    """The service answered, but the structured body could not be repaired."""
