"""Domain-specific exceptions"""


class StopEngineError(Exception):
    """Base exception for the routing engine"""

    pass


class PolicyVersionNotFoundError(StopEngineError):
    """Requested policy version is not in the registry"""

    pass


class RuleNotFoundError(StopEngineError):
    """No rule with the given id in the current policy version"""

    pass


class InvalidRuleError(StopEngineError):
    """Rule is structurally incomplete or references an unknown field"""

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or []


class NoEligibleChildrenError(StopEngineError):
    """Routing credential has no eligible child credential to resolve to"""

    pass


class PipelineBusyError(StopEngineError):
    """run_pipeline called while the same engine instance is mid-run"""

    pass
