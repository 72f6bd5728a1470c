"""
ProgressPath service package.

Design intent:
- Run facilitator-defined learning goals as guided tutor conversations.
- Keep per-session state transitions in small store commands.
- Keep domain modules (tracking/inference/notify) independent from the API layer.
"""
