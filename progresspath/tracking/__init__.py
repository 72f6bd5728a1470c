"""
Per-session tracking for ProgressPath.

Design intent:
- Express progress and off-topic escalation as small transition rules.
- Let the session store apply those rules atomically per session.
- Detect silent sessions with a periodic sweep instead of per-session timers.
"""
