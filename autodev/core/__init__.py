"""Configuration, domain models, errors and component wiring."""
