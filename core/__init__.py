"""Core module - shared building blocks of the ERP sync core.

Contains the data models, configuration, error taxonomy, clock helpers
and observability. It is intentionally ERP-agnostic.

ERP-specific protocol code belongs in /connectors/.
"""

__version__ = "1.0.0"
