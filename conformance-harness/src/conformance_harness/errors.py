from __future__ import annotations

from typing import Any, Mapping, Optional


class ConfigurationError(RuntimeError):
    pass


class SpecValidationError(ConfigurationError):
    pass


class InvalidStateError(RuntimeError):
    pass


class RunInProgressError(InvalidStateError):
    pass


class UnknownInstanceError(LookupError):
    pass


class LockedVariableError(ValueError):
    def __init__(self, name: str) -> None:
        super().__init__(f"variable {name!r} is locked for this run")
        self.name = name


class ProtocolClientError(RuntimeError):
    pass


class CheckSignal(Exception):
    """Raised inside a check to end it with a specific outcome.

    Each subclass maps to one Test Result outcome; the engine catches these at
    the check boundary and never lets them escape a sequence run.
    """

    result: str = "fail"

    def __init__(self, message: str = "", details: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = str(message)
        self.details: dict[str, Any] = dict(details) if isinstance(details, Mapping) else {}

    def update_result(self, fields: dict[str, Any]) -> None:
        fields["result"] = self.result
        fields["message"] = self.message
        if self.details:
            fields["details"] = dict(self.details)


class AssertionFailure(CheckSignal):
    result = "fail"


class SkipCondition(CheckSignal):
    result = "skip"


class OmitCondition(CheckSignal):
    result = "omit"


class TodoCondition(CheckSignal):
    result = "todo"


class PassCondition(CheckSignal):
    result = "pass"
