"""Persistence collaborators: object storage for staged artifacts, Postgres for contacts."""

from .contacts import ContactRepository, PostgresContactRepository
from .storage import ArtifactStore, SupabaseArtifactStore

__all__ = [
    "ArtifactStore",
    "ContactRepository",
    "PostgresContactRepository",
    "SupabaseArtifactStore",
]
