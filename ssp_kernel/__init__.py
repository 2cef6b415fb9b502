"""
SSP Kernel - shared primitives for the SSP allocation engine.

- Structured JSON logging with invocation context
- Typed exception hierarchy with stable error codes
- Money, Currency and RoundingMode value objects
- SQLAlchemy declarative base, engine and append-only enforcement
"""

__version__ = "0.1.0"
