"""SQLAlchemy models for Paygate.

All models are imported here so that ``Base.metadata`` knows every table
(``create_all`` in tests, schema autogeneration). If you add a new model,
import it in this file.
"""

from paygate.models.invoice import Invoice
from paygate.models.payment import Payment
from paygate.models.subscription import Subscription
from paygate.models.user import User

__all__ = [
    "Invoice",
    "Payment",
    "Subscription",
    "User",
]
