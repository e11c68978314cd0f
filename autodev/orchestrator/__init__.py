"""Task queue, state machine, metrics, health checks and the control loop."""
