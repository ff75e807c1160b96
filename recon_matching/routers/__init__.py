"""API routers."""

from recon_matching.routers import matching, rules

__all__ = ["matching", "rules"]
