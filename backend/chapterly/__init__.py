"""
Chapterly Backend — Application Package Initializer
===================================================

What: Marks the `chapterly` directory as a Python package.
Why:  Enables module imports like `from chapterly.config import settings`.
Who:  Used implicitly by Python's import system and explicitly by pytest and uvicorn.

Architecture Note:
    The backend follows the same layered architecture for every resource:

    ┌─────────────────────────────────────┐
    │           Routes (API Layer)        │  ← HTTP concerns only
    ├─────────────────────────────────────┤
    │         Services (Business Logic)   │  ← Ledger, unlock, purchases
    ├──────────────────┬──────────────────┤
    │  Models/Schemas  │     Gateways     │  ← ORM rows, API contracts,
    │                  │                  │    Stripe / Play / Supabase Auth
    ├──────────────────┴──────────────────┤
    │        Database (Persistence)       │  ← Async SQLAlchemy sessions
    └─────────────────────────────────────┘

    Routes never touch provider SDKs directly; services receive gateways
    through FastAPI dependencies so tests can swap them for mocks.
"""

__version__ = "1.0.0"
