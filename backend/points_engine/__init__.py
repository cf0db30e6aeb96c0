"""
Points Engine — Application Package Initializer
================================================

What: The points economy backend of the book exchange platform.
Why:  Keeps every point movement (listing bonuses, exchanges, purchased top-ups,
      refunds) behind one auditable ledger, and prices new listings.
Who:  Imported by uvicorn (`points_engine.main:app`), Alembic and pytest.

Architecture Note:
    The backend follows the same layered split as the rest of our services:

    ┌─────────────────────────────────────┐
    │           Routes (API Layer)        │  ← HTTP concerns only
    ├─────────────────────────────────────┤
    │         Services (Business Logic)   │  ← Valuation, ledger, payments
    ├─────────────────────────────────────┤
    │       Models & Schemas (Data)       │  ← SQLAlchemy ORM + Pydantic
    ├─────────────────────────────────────┤
    │        Database (Persistence)       │  ← Async sessions + UnitOfWork
    └─────────────────────────────────────┘

    Money invariant: User.points always equals the sum of that user's
    PointTransaction amounts. Only LedgerService.apply_movement writes either.
"""

__version__ = "1.0.0"
