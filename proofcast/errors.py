"""
Exception hierarchy for proofcast.

Selector and usage errors surface straight to the scenario. Capture and
composition problems are mostly handled inside the pipeline and only escape
as the hard-failure subclasses below.
"""


class ProofcastError(Exception):
    """Base class for all proofcast errors."""


class ElementNotFoundError(ProofcastError):
    """A selector or wait condition did not resolve in time."""

    def __init__(self, selector: str, timeout_ms: int, message: str = ""):
        self.selector = selector
        self.timeout_ms = timeout_ms
        super().__init__(message or f'Element not found: "{selector}" (timeout {timeout_ms}ms)')


class OptionNotFoundError(ElementNotFoundError):
    """A custom select was opened but no option matched the requested text."""

    def __init__(self, selector: str, value: str):
        self.value = value
        super().__init__(selector, 0, f'Option "{value}" not found in select "{selector}"')


class SessionUsageError(ProofcastError):
    """The session API was used out of order (double finish, unknown pane...)."""


class CaptureError(ProofcastError):
    """A capture backend could not be started or stopped."""


class CaptureValidationError(CaptureError):
    """A screen capture finished but produced no decodable frames."""


class CompositionError(ProofcastError):
    """Neither the composite nor the single-stream fallback could be produced."""


class TimingMismatchError(ProofcastError):
    """The output video duration drifted from the measured run duration."""


class NarrationError(ProofcastError):
    """Speech synthesis failed for a narration clip."""
