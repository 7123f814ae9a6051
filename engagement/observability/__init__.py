"""
Observability module for the engagement engine.

This module provides:
- Metrics collection with Prometheus
"""

__all__ = ["metrics"]
