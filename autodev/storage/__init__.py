"""Content-addressed checkpoint persistence."""
