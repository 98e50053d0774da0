"""
Background jobs for the signal engine.

Signal calculation runs as asyncio tasks managed by SignalProcessor; see
screener/jobs/signal_processor.py for the job lifecycle.
"""

from screener.jobs.signal_processor import (
    SignalJob,
    SignalProcessor,
    get_signal_processor,
)

__all__ = [
    "SignalJob",
    "SignalProcessor",
    "get_signal_processor",
]
