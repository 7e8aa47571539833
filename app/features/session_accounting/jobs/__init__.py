"""
Job runners for the session accounting feature.
"""

from .subscriber_status_job import list_concentrators, list_subscriber_status, show_subscriber

__all__ = ["list_concentrators", "list_subscriber_status", "show_subscriber"]
