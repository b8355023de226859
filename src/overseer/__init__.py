"""Phase-gated task orchestration with escalation oversight."""

__version__ = "0.1.0"
