"""Background workers for the import pipeline."""
