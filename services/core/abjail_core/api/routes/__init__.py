"""API routes."""

from abjail_core.api.routes import blobs, cases, inbound, pipeline, reports, submissions

__all__ = ["blobs", "cases", "inbound", "pipeline", "reports", "submissions"]
