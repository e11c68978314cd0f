"""Orchestration and safe self-modification core for an autonomous development agent."""

__version__ = "0.1.0"
