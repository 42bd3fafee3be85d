"""Edge Connectivity Test

Orchestrates long-running connectivity tests of an edge runtime: deployment,
scheduled network faults, load generation, metrics collection, and verdicts.
"""

__version__ = "0.1.0"
