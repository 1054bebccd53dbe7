"""
Exception types raised inside the engine.

Public engine methods convert these into empty or error-carrying results;
only programming errors escape to callers.
"""


class EngineError(Exception):
    """Base class for expected engine failures."""


class LLMError(EngineError):
    """The language-model service was unreachable or answered garbage."""


class StoreUnavailableError(EngineError):
    """The persistent registry store could not be read or written."""


class StructureCaptureError(EngineError):
    """The page could not be inspected for its structural summary."""


class PageInteractionError(EngineError):
    """A page handle call (query or script evaluation) failed."""
