"""
Automation module for processing scan jobs against the host system

Architecture Overview:
======================

    SchedulerLoop (services/scheduler.py)
                    │
                    ▼
    ┌───────────────────────────────────────────────────┐
    │            AutomationService                      │ ← Session supervisor
    │   (single session slot + driver factory)          │
    └───────────────────┬───────────────────────────────┘
                        │ one per job
                        ▼
    ┌─────────────────────────────────────────────────┐
    │            ScanStateMachine                     │ ← transitions AsyncMachine
    │   (phase handlers, deadlines, failure effects)  │
    └───────┬──────────────────┬──────────────────────┘
            │                  │
            ▼                  ▼
    ┌────────────────┐  ┌──────────────────────────────┐
    │  PageDriver    │  │  ResultReporter              │
    │  (interface)   │  │  (artifact upload, complete) │
    └───────┬────────┘  └──────────────────────────────┘
            │
            ▼
    ┌──────────────────────┐
    │ PlaywrightPageDriver │
    └──────────────────────┘

    Supporting Components:
    ├── FormHelpers      ← Selector lists and retry with backoff
    └── ResultDetector   ← File name matching and score parsing
"""

from .automation_service import AutomationService, CallbackManager
from .page_driver import PageDriver, PageKind, ResultRow
from .reporter import ResultReporter
from .scan_state_machine import AutomationSession, Phase, ScanStateMachine

__all__ = [
    "AutomationService",
    "AutomationSession",
    "CallbackManager",
    "PageDriver",
    "PageKind",
    "Phase",
    "ResultReporter",
    "ResultRow",
    "ScanStateMachine",
]
