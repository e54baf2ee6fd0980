from __future__ import annotations


class FiqhAssistantError(RuntimeError):
    """Base class for session engine failures."""


class ConfigError(FiqhAssistantError):
    """Raised when provider credentials or configuration are missing."""


class ConnectivityDegraded(FiqhAssistantError):
    """Remote store unreachable or misconfigured; callers downgrade to local-only mode."""


class SchemaMissing(ConnectivityDegraded):
    """The expected remote table is absent; needs a one-time setup, not a retry."""


class LocalParseFailure(FiqhAssistantError):
    """Cached client data could not be decoded."""


class GenerationInterrupted(FiqhAssistantError):
    """The streaming provider failed mid-reply; the partial reply was discarded."""

    def __init__(self, message: str = "Knowledge retrieval interrupted.", *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class SynthesisOrPlaybackFailure(FiqhAssistantError):
    """A speech segment could not be synthesized, decoded or scheduled."""


class AudioDecodeError(SynthesisOrPlaybackFailure):
    """The synthesized payload is not valid 16-bit PCM."""


class ReplyInProgress(FiqhAssistantError):
    """A reply is already streaming into the visible conversation."""
