"""BitSwitch rollout engine: flag evaluation, progressive rollouts and metric alerts."""

__version__ = "0.1.0"
