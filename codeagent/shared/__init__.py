"""Persisted models and services shared by the engine and server."""
