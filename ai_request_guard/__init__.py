"""
AI Request Guard.

Request orchestration and resilience for simulation-driven text generation.
"""

__version__ = "0.1.0"
