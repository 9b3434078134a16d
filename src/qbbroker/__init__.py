"""
qbbroker — QuickBooks Online OAuth token broker.

Connects QuickBooks companies through the browser consent flow, keeps their
tokens fresh, and hands out authenticated API clients per company.
"""

__version__ = "0.1.0"
__all__ = ["BrokerConfig", "QuickBooksBroker", "QuickBooksClient", "TokenManager"]

from qbbroker.auth.manager import TokenManager  # noqa: E402
from qbbroker.broker import QuickBooksBroker  # noqa: E402
from qbbroker.config import BrokerConfig  # noqa: E402
from qbbroker.quickbooks import QuickBooksClient  # noqa: E402
