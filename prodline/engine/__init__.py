"""
Stage engine module.
Contains the stage engine, its timing model, pipeline and completion notifier.
"""

from prodline.engine.notifier import CompletionNotifier, HttpNotifier, Notifier
from prodline.engine.pipeline import Pipeline, StageSpec
from prodline.engine.simulator import StageEngine
from prodline.engine.timing import Clock, ManualClock, SystemClock, compute_duration

__all__ = [
    "StageEngine",
    "Pipeline",
    "StageSpec",
    "Notifier",
    "HttpNotifier",
    "CompletionNotifier",
    "Clock",
    "ManualClock",
    "SystemClock",
    "compute_duration",
]
