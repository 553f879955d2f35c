"""
aicall.engine
=============

Client-side correlation engine: upload, submit, poll and resolve AI requests.
"""

from __future__ import annotations

from .correlator import CorrelationEngine, RequestOutcome, RequestState, Resolution
from .schedule import Cancellation, Clock, ManualClock, MonotonicClock, PollPolicy, PollSchedule

__all__ = [
    "CorrelationEngine",
    "RequestOutcome",
    "RequestState",
    "Resolution",
    "Cancellation",
    "Clock",
    "ManualClock",
    "MonotonicClock",
    "PollPolicy",
    "PollSchedule",
]
