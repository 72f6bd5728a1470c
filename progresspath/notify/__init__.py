"""
Real-time fan-out for ProgressPath.

Design intent:
- Publish every committed state change to the owning group channel and,
  where a participant should see it, to the session channel as well.
- Keep publishers unaware of who is currently subscribed.
"""
