from __future__ import annotations


class ValidationError(Exception):
    pass


class InvalidTransitionError(ValidationError):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"task run status cannot change from '{current}' to '{target}'")
        self.current = current
        self.target = target
