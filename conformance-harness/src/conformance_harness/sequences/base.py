from __future__ import annotations

import contextlib
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Dict, Iterator, Mapping, Optional, Sequence

from conformance_harness.client import ProtocolClient
from conformance_harness.errors import AssertionFailure, ConfigurationError
from conformance_harness.models import ResourceReference, RunInstance
from conformance_harness.validation import SchemaValidator, ValidationOutcome
from conformance_harness.variables import StagedVariables


@dataclass(frozen=True)
class Check:
    check_id: str
    name: str
    method_name: str
    required: bool = True
    hard_stop: bool = False
    description: str = ""
    url: str = ""
    ref: str = ""
    versions: Sequence[str] = ()

    def key(self, prefix: str) -> str:
        return f"{prefix}-{self.check_id}" if prefix else self.check_id


def check(
    check_id: str,
    name: str,
    *,
    required: bool = True,
    hard_stop: bool = False,
    description: str = "",
    url: str = "",
    ref: str = "",
    versions: Sequence[str] = (),
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Mark a method of a `SequenceDefinition` as one of its checks.

    Checks run in the order they are defined in the class body.
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        func.__check__ = Check(  # type: ignore[attr-defined]
            check_id=str(check_id),
            name=name,
            method_name=func.__name__,
            required=required,
            hard_stop=hard_stop,
            description=description,
            url=url,
            ref=ref,
            versions=tuple(versions),
        )
        return func

    return decorator


@dataclass(frozen=True)
class Suspend:
    """Returned by a check to hand control to an external interactive flow.

    The run ends with outcome `wait` until a callback arrives at `endpoint`.
    """

    endpoint: str
    redirect_url: Optional[str] = None


class SequenceDefinition:
    """Base class of all sequence definitions.

    Subclasses declare metadata as class attributes and checks as methods
    decorated with `@check`. One instance is created per execution pass, so
    checks may keep state on `self` for later checks of the same pass.
    """

    sequence_name: ClassVar[str] = ""
    title: ClassVar[str] = ""
    description: ClassVar[str] = ""
    details: ClassVar[str] = ""
    test_id_prefix: ClassVar[str] = ""

    requires: ClassVar[Sequence[str]] = ()
    new_requires: ClassVar[Sequence[str]] = ()
    defines: ClassVar[Sequence[str]] = ()
    optional: ClassVar[bool] = False
    versions: ClassVar[Sequence[str]] = ()

    checks: ClassVar[tuple[Check, ...]] = ()

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        collected: Dict[str, Check] = {c.check_id: c for c in cls.checks}
        for value in cls.__dict__.values():
            meta = getattr(value, "__check__", None)
            if not isinstance(meta, Check):
                continue
            if meta.check_id in collected and collected[meta.check_id].method_name != meta.method_name:
                raise ConfigurationError(
                    f"duplicate check id {meta.check_id!r} in sequence {cls.__name__}"
                )
            collected[meta.check_id] = meta
        cls.checks = tuple(collected.values())
        if not cls.sequence_name:
            cls.sequence_name = cls.__name__

    @classmethod
    def required_variables(cls) -> list[str]:
        out: list[str] = []
        for name in (*cls.requires, *cls.new_requires):
            if name not in out:
                out.append(name)
        return out

    @classmethod
    def supports_version(cls, fhir_version: Optional[str]) -> bool:
        if not cls.versions or not fhir_version:
            return True
        return str(fhir_version).lower() in {str(v).lower() for v in cls.versions}

    @classmethod
    def check_supports_version(cls, c: Check, fhir_version: Optional[str]) -> bool:
        if not c.versions or not fhir_version:
            return True
        return str(fhir_version).lower() in {str(v).lower() for v in c.versions}

    @classmethod
    def precondition(cls, instance: RunInstance) -> Optional[str]:
        """Return a reason string when the sequence cannot run, else None."""
        return None

    @classmethod
    def check_key(cls, c: Check) -> str:
        return c.key(cls.test_id_prefix)

    @classmethod
    def describe(cls) -> Dict[str, Any]:
        return {
            "sequence_name": cls.sequence_name,
            "title": cls.title,
            "description": cls.description,
            "requires": list(cls.requires),
            "new_requires": list(cls.new_requires),
            "defines": list(cls.defines),
            "optional": bool(cls.optional),
            "versions": list(cls.versions),
            "checks": [
                {
                    "id": cls.check_key(c),
                    "name": c.name,
                    "required": c.required,
                    "hard_stop": c.hard_stop,
                }
                for c in cls.checks
            ],
        }


@dataclass
class CheckContext:
    """Everything a check may touch while it runs."""

    instance: RunInstance
    variables: StagedVariables
    client: ProtocolClient
    validator: Optional[SchemaValidator] = None
    logger: Any = None
    callback_params: Mapping[str, Any] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    information: list[str] = field(default_factory=list)
    resource_references: list[ResourceReference] = field(default_factory=list)

    def reset_messages(self) -> None:
        self.warnings = []
        self.information = []

    def warn(self, message: str) -> None:
        self.warnings.append(str(message))

    def info(self, message: str) -> None:
        self.information.append(str(message))

    @contextlib.contextmanager
    def warning(self) -> Iterator[None]:
        """Downgrade assertion failures inside the block to warnings."""
        try:
            yield
        except AssertionFailure as e:
            self.warnings.append(e.message)

    def redirect(self, url: str, endpoint: str) -> Suspend:
        return Suspend(endpoint=endpoint, redirect_url=url)

    def wait_at_endpoint(self, endpoint: str) -> Suspend:
        return Suspend(endpoint=endpoint)

    def add_resource_reference(
        self, resource_type: str, resource_id: str, *, profile: Optional[str] = None
    ) -> None:
        self.resource_references.append(
            ResourceReference(resource_type=resource_type, resource_id=resource_id, profile=profile)
        )

    def validate_resource(self, resource: Mapping[str, Any], profile: str) -> ValidationOutcome:
        """Run the injected validator; errors fail the check, the rest is attached."""
        if self.validator is None:
            self.info(f"No validator configured; {profile} not checked")
            return ValidationOutcome()
        outcome = self.validator.validate(resource, profile)
        self.warnings.extend(outcome.warnings)
        self.information.extend(outcome.information)
        if outcome.errors:
            raise AssertionFailure(
                f"Resource does not conform to profile {profile}",
                {"errors": list(outcome.errors)},
            )
        return outcome
