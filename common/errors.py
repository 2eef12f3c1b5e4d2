class TransientIOError(Exception):
    """Network, storage or registry hiccup. Retried with bounded backoff."""


class ValidationError(Exception):
    """Job data that can never composite (no valid tiles, bad dimensions). Not retried."""


class LeaseConflict(Exception):
    """Another invocation holds the job lease. Callers treat this as a no-op."""


class IllegalTransition(ValueError):
    def __init__(self, kind: str, current, target):
        self.kind = kind
        self.current = current
        self.target = target
        super().__init__(f"illegal {kind} transition {current} -> {target}")
