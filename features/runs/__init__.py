"""
Runs feature: durable journal of workflow runs and memoized steps.

Public API:
    from features.runs import RunJournal, RunKey, RunRecord, RunStatus
    from features.runs import db as run_db
"""

from features.runs.journal import MISSING, RunJournal
from features.runs.models import RunKey, RunRecord, RunStatus

__all__ = ["MISSING", "RunJournal", "RunKey", "RunRecord", "RunStatus"]
