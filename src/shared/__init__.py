"""
Shared Kernel Module
====================

Generic infrastructure used by the SLA module and the application shell:
structured logging, request middleware and the metrics exporter.

DO NOT add SLA business logic to the shared kernel.
"""

__version__ = "1.0.0"
