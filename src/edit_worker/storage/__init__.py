"""SQLite storage primitives shared by the worker."""
