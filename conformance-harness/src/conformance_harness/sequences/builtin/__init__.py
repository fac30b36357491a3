from conformance_harness.sequences.builtin.discovery import SmartDiscoverySequence
from conformance_harness.sequences.builtin.encounter import EncounterSearchSequence
from conformance_harness.sequences.builtin.launch import StandaloneLaunchSequence
from conformance_harness.sequences.builtin.patient import PatientReadSequence

BUILTIN_SEQUENCES = (
    SmartDiscoverySequence,
    StandaloneLaunchSequence,
    PatientReadSequence,
    EncounterSearchSequence,
)

__all__ = [
    "BUILTIN_SEQUENCES",
    "EncounterSearchSequence",
    "PatientReadSequence",
    "SmartDiscoverySequence",
    "StandaloneLaunchSequence",
]
