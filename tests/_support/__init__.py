"""Shared test helpers (builders for digests, manifests and settings)."""
