"""Exception hierarchy for Concilium."""

from __future__ import annotations

from typing import Optional


class ConciliumError(Exception):
    """Base error carrying a short machine-readable code."""

    code = "CONCILIUM_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        if code:
            self.code = code


class ConfigError(ConciliumError):
    code = "CONFIG_ERROR"


class PipelineError(ConciliumError):
    code = "PIPELINE_ERROR"


class AgentError(ConciliumError):
    code = "AGENT_ERROR"


class RunCancelledError(ConciliumError):
    code = "RUN_CANCELLED"
