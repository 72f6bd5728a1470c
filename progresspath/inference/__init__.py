"""
Inference gateway boundary for ProgressPath.

Design intent:
- Keep provider-specific request/response handling out of the turn logic.
- Bound every external call with a timeout and a fixed retry budget.
- Fail closed: malformed or empty output is a failure, never a partial verdict.
"""
