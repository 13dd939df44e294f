"""
Engine services

This package provides:
- Identity hashing and rollout strategy evaluation
- Targeting rule matching
- Progressive stage scheduling
- Metric aggregation and alert threshold evaluation
- Store interfaces with in-memory and SQL implementations
"""
