from conformance_harness.sequences.base import (
    Check,
    CheckContext,
    SequenceDefinition,
    Suspend,
    check,
)
from conformance_harness.sequences.registry import SequenceRegistry


def default_registry() -> SequenceRegistry:
    from conformance_harness.sequences.builtin import BUILTIN_SEQUENCES

    return SequenceRegistry(BUILTIN_SEQUENCES)


__all__ = [
    "Check",
    "CheckContext",
    "SequenceDefinition",
    "SequenceRegistry",
    "Suspend",
    "check",
    "default_registry",
]
