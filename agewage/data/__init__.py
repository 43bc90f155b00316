"""
Survey data modules: wave loading, schema harmonization, panel construction
and the policy event calendar.
"""

from agewage.data.variable_map import VariableMap, CanonicalVariable, CANONICAL_NAMES
from agewage.data.waves import WaveId, RawWave, WaveLoader, FrameWaveLoader, FileWaveLoader
from agewage.data.harmonize import SchemaHarmonizer, HarmonizedWave
from agewage.data.panel import PanelBuilder, PanelBuildResult, DedupPolicy, PANEL_COLUMNS
from agewage.data.policy_events import PolicyEvent, PolicyCalendar, get_policy_calendar

__all__ = [
    "VariableMap",
    "CanonicalVariable",
    "CANONICAL_NAMES",
    "WaveId",
    "RawWave",
    "WaveLoader",
    "FrameWaveLoader",
    "FileWaveLoader",
    "SchemaHarmonizer",
    "HarmonizedWave",
    "PanelBuilder",
    "PanelBuildResult",
    "DedupPolicy",
    "PANEL_COLUMNS",
    "PolicyEvent",
    "PolicyCalendar",
    "get_policy_calendar",
]
