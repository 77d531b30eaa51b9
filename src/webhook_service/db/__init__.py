"""Database helpers for the postgres store backend."""
