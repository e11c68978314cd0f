"""Self-improvement: opportunity analysis, approvals and the modification cycle."""
