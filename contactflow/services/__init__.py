"""Import pipeline services: request normalization, staging, and job handoff."""
