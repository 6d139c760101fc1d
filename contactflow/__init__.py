"""
Contactflow - Contact Import Pipeline

FastAPI service that stages submitted contact records in Supabase Storage and
hands them to a Postgres-backed worker pool for validation and persistence.
"""

__version__ = "0.1.0"
