"""
Invest Gateway - Package Initializer
====================================

What: HTTP entry layer for the AI Investment Platform backend.
How:  A FastAPI application whose middleware chain applies the cross-cutting
      policies, whose router dispatches to domain handler groups, and whose
      error normalizer shapes every failure into one JSON envelope.

Layering:

    ┌─────────────────────────────────────┐
    │   Lifecycle (probe, serve, signals) │
    ├─────────────────────────────────────┤
    │   Middleware chain (policies)       │
    ├─────────────────────────────────────┤
    │   Router / dispatcher               │
    ├─────────────────────────────────────┤
    │   Handler groups (collaborators)    │
    └─────────────────────────────────────┘
"""

__version__ = "1.0.0"
