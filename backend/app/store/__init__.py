"""
store — Persistence capability for the safety engine.

Modules:
    base    — Store interface and shared radius helpers
    memory  — In-process store (development, tests)
    sql     — SQLAlchemy async store (PostgreSQL / SQLite)
    orm     — Table definitions for the SQL store
"""
