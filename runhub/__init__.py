"""runhub – run orchestration and event broadcast for a local test dashboard."""

__version__ = "0.1.0"
