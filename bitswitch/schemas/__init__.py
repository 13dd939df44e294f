"""Pydantic schemas and value types for rollouts, evaluation and alerting."""
