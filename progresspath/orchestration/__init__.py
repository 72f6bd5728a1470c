"""
Facilitator and participant operations for ProgressPath.

Design intent:
- Validate input before touching state; rejected requests change nothing.
- Commit through the session store, then fan out what was committed.
- Keep the slow inference call outside any store lock.
"""
