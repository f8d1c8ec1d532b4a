# ~/Projects/Gitty/gitty/errors.py
# Error taxonomy for the voice pipeline.

from __future__ import annotations


class GittyError(RuntimeError):
    """Base class for every error the pipeline surfaces to the user."""


class MicrophonePermissionError(GittyError):
    """The microphone could not be opened (denied, busy or missing)."""


class WakeWordError(GittyError):
    pass


class WakeWordAssetError(WakeWordError):
    """Wake-word model or keyword assets are missing; wake arming is disabled."""


class WakeWordNotReady(WakeWordError):
    """arm() was called before a successful initialize()."""


class InferenceError(GittyError):
    pass


class InferenceConfigError(InferenceError):
    pass


class InferenceServiceError(InferenceError):
    """Endpoint unreachable, non-200 response, or an envelope without content."""


class InferenceParseError(InferenceError):
    def __init__(self, message: str, excerpt: str = ""):
        super().__init__(message)
        self.excerpt = excerpt


class InferenceValidationError(InferenceError):
    pass


class GateBusyError(GittyError):
    """A command is already awaiting confirmation."""
