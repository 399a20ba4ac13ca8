"""Event type constants for setup-auth."""

# Run lifecycle events
RUN_STARTED = "run_started"
RUN_COMPLETED = "run_completed"
RUN_FAILED = "run_failed"

# Step lifecycle events
STEP_STARTED = "step_started"
STEP_COMPLETED = "step_completed"
STEP_SKIPPED = "step_skipped"

# Remote mutation events
POLICY_UPDATED = "policy_updated"
ROLES_GRANTED = "roles_granted"
SERVICE_ENABLED = "service_enabled"
CREDENTIAL_ROTATED = "credential_rotated"
PROJECT_MOVED = "project_moved"
