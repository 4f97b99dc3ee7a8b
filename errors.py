class OceanMonitorError(Exception):
    """Base class for domain errors surfaced to API callers."""


class NotFoundError(OceanMonitorError):
    def __init__(self, kind: str, identifier: object):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class ConflictError(OceanMonitorError):
    pass


class InvalidTransitionError(OceanMonitorError):
    def __init__(self, alert_id: int, current: str, target: str):
        self.alert_id = alert_id
        self.current = current
        self.target = target
        super().__init__(f"Alert {alert_id} cannot move from '{current}' to '{target}'")
