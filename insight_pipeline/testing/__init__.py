"""Test doubles for driving the pipeline without wall-clock time or an LLM.

``StoreTestKit`` lives in ``insight_pipeline.testing.store_test_kit`` and
is imported from there, since it depends on pytest.
"""

from insight_pipeline.testing.analyzer import HANG, ScriptedAnalyzer
from insight_pipeline.testing.clock import ManualClock

__all__ = [
    "HANG",
    "ManualClock",
    "ScriptedAnalyzer",
]
