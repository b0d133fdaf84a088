"""
FORECOURT LEDGER - API Module

FastAPI server exposing:
- Meter readings and cascading corrections
- Daily transaction reconciliation
- Creditor credit, settlements and balances
- Aging and drift reports
"""

from .server import app, create_app

__all__ = ["app", "create_app"]
