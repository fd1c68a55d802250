"""
PostSnap Backend — Application Package Initializer
===================================================

What: Marks the `app` directory as a Python package.
Who:  Used implicitly by Python's import system and explicitly by Alembic, pytest, and uvicorn.

Architecture Note:
    ┌─────────────────────────────────────┐
    │           Routes (API Layer)        │  ← HTTP concerns only
    ├─────────────────────────────────────┤
    │     PostService (Orchestrator)      │  ← blob/metadata consistency
    ├──────────────────┬──────────────────┤
    │  Storage Adapter │  Post Repository │  ← ImageKit / SQLAlchemy
    ├──────────────────┴──────────────────┤
    │       Models & Schemas (Data)       │  ← SQLAlchemy ORM + Pydantic
    └─────────────────────────────────────┘
"""

__version__ = "1.0.0"
