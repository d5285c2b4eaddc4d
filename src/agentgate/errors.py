"""Exceptions raised at the edges of the dispatch loop.

Model backends, tools, channel transports and the memory store signal
failure by raising one of these. ``retryable`` tells the caller whether the
same call may succeed if repeated; the dispatcher turns every one of them
into an outcome value, so only cancellation escapes a dispatch cycle.
"""


class AgentGateError(Exception):
    """Root of the hierarchy; carries the ``retryable`` flag."""

    def __init__(self, message: str = "", *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class ProviderError(AgentGateError):
    """Model backend call failed; transient unless flagged otherwise."""

    def __init__(self, message: str = "", *, retryable: bool = True) -> None:
        super().__init__(message, retryable=retryable)


class ToolError(AgentGateError):
    """Tool handler failed or was given unusable arguments."""


class PolicyError(AgentGateError):
    """Execution attempted without a sandbox ``Authorized`` decision."""


class ChannelError(AgentGateError):
    """Reply could not be delivered over a channel transport."""

    def __init__(self, message: str = "", *, retryable: bool = True) -> None:
        super().__init__(message, retryable=retryable)


class ConfigError(AgentGateError):
    """Settings name a backend or value the runtime cannot build."""


class MemoryStoreError(AgentGateError):
    """Memory backend could not read or write."""
