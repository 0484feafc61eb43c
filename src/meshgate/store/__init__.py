# src/meshgate/store/__init__.py
"""
meshgate: state persistence

  - state_store: append-only history of the overlay daemon state blob
  - sqlite_db: SQLite backend (local runs, tests)
  - postgres_db: PostgreSQL backend (production; survives storage wipes)
"""

from __future__ import annotations

from meshgate.store.state_store import StateStore, open_state_store

__all__ = ["StateStore", "open_state_store"]
