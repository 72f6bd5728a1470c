"""
API orchestration boundary for ProgressPath.

Design intent:
- Expose thin, typed endpoints for facilitator and participant flows.
- Keep request validation explicit and failure modes predictable.
- Stream fan-out events over WebSocket subscriptions.
"""
