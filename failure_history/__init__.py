"""
CI Failure History

Polls a Jenkins job for completed builds and keeps, per test, the history
of builds in which it did not pass.

Components:
    - scanner: Scan Trigger, finds builds newer than the last scan
    - collector: Result Collector, merges one build's test report
    - dispatcher: fire-and-forget fan-out from trigger to collector
    - storage: SQL (SQLAlchemy) and in-memory history stores
    - app: FastAPI service, cli: command line entry point
"""

__version__ = "0.1.0"
