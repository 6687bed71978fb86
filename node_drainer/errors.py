class NodeDrainerError(Exception):
    """Base class for errors raised by the node drainer."""


class ConfigurationError(NodeDrainerError):
    """Raised when the controller cannot be configured from its flags or environment."""


class CordonError(NodeDrainerError):
    """Raised when a node could not be marked unschedulable."""


class DrainError(NodeDrainerError):
    """Raised when a drain could not be carried out at all."""


class AlreadyScheduledError(NodeDrainerError):
    """Raised when a drain is requested for a node that already has a live drain record."""

    def __init__(self, node_name: str, scheduled_for=None):
        super().__init__(f"drain already scheduled for node '{node_name}'")
        self.node_name = node_name
        self.scheduled_for = scheduled_for
