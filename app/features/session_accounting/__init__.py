"""
Session accounting feature package.

Resolves subscriber connectivity from the RADIUS accounting log: domain
models, the radacct repository and the resolver service live side by side.
"""

from .domain.models import AccountingEvent, SubscriberStatusView  # noqa: F401
from .services.resolver import SessionAccountingResolver, resolve_latest_per_subscriber  # noqa: F401
