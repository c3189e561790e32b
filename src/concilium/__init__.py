"""Concilium - multi-agent deliberation over coding-assistant CLIs."""

__version__ = "1.0.0"
