"""abpilot - automatic A/B test decision engine.

Significance analysis, winner scheduling and phased rollout with
automatic rollback.
"""

__version__ = "0.1.0"
