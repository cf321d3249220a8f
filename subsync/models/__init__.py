"""SQLAlchemy models for Subsync.

All models are imported here so that Alembic's autogenerate can discover
them via Base.metadata. If you add a new model, import it in this file.
"""

from subsync.models.subscription import Subscription
from subsync.models.user import User

__all__ = [
    "Subscription",
    "User",
]
