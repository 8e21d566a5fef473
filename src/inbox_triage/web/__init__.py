"""JSON API for the inbox triage engine.

Provides FastAPI routes for:
- Triggering and polling triage runs
- Reading classifications with their effective priority
- Overrides, handled/snooze marks and sender settings
- User rule management
"""

from inbox_triage.web.app import create_app

__all__ = ["create_app"]
