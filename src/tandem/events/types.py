"""Event type constants for Tandem."""

# Turn lifecycle events
TURN_STARTED = "turn_started"
TURN_COMPLETED = "turn_completed"
TURN_FAILED = "turn_failed"
TURN_CANCELLED = "turn_cancelled"
WORKING_CHANGED = "working_changed"
PROMPT_TRIGGERED = "prompt_triggered"

# Tool events
TOOL_CALL_COMPLETED = "tool_call_completed"
UNDO_APPLIED = "undo_applied"

# Billing events
CREDITS_INSUFFICIENT = "credits_insufficient"
PLAN_LIMITS_EXCEEDED = "plan_limits_exceeded"

# Conversation events
CONVERSATION_UPDATED = "conversation_updated"
