"""Exception types raised by the report core.

Library code raises these; the CLI and MCP adapters translate them into
user-facing messages.
"""


class DEExplorerError(Exception):
    """Base class for all de-explorer errors."""


class ComputationError(DEExplorerError):
    """A pipeline stage failed to produce output.

    Attributes:
        stage: Name of the stage that failed ("load", "de", "annotation",
            "classification", "enrichment").
    """

    def __init__(self, stage: str, message: str):
        super().__init__(f"[{stage}] {message}")
        self.stage = stage
        self.message = message


class ParameterError(DEExplorerError, ValueError):
    """A parameter value was unknown or outside its declared domain."""
