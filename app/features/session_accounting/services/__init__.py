"""
Service layer for session accounting.
"""

from .resolver import (  # noqa: F401
    SessionAccountingResolver,
    build_status_view,
    resolve_latest_per_subscriber,
)
