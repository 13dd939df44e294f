"""BitSwitch rollout engine test suite.

- unit/: pure functions and schemas (hashing, rollout configs, metric aggregation, alerts)
- services/: services wired to in-memory and SQLite-backed stores
"""
