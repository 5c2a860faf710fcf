"""Refresh pipeline services: gateway, store writers, worker, validator."""
