# returnguard/api/__init__.py
# ============================
# API Layer — ReturnGuard
#
# Responsibility:
#   - Expose the decision engine over HTTP (FastAPI, /api/v1)
#   - Map engine errors to status codes; never hold authoritative state

from returnguard.api.app import create_app  # noqa: F401
