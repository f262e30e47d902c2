"""nodepulse — real-time system metrics streaming client."""

__version__ = "0.1.0"
