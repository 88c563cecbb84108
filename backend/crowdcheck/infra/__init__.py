"""Shared infrastructure adapters (Postgres, Redis, auth)."""
