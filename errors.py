"""
Build-time errors raised while declaring the traffic mirroring topology.
All of them are fatal; nothing in the declaration is retried.
"""


class TopologyError(ValueError):
    pass


class ConfigurationError(TopologyError):
    """Missing or inconsistent configuration input (sizing, region, ports)."""


class UnresolvedReferenceError(TopologyError):
    """An entity points to a sibling that is not declared in the same graph."""

    def __init__(self, source: str, field: str, target: str, reason: str = "is not declared"):
        self.source = source
        self.field = field
        self.target = target
        super().__init__(f"'{source}.{field}' references '{target}', which {reason}")


class InvariantViolationError(TopologyError):
    pass
