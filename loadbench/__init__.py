"""
loadbench - distributed load test orchestrator.
"""

__version__ = "0.1.0"
