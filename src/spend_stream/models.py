"""
Alembic model import hook.

Importing this module ensures all SQLAlchemy models are registered on Base.metadata.
"""

from __future__ import annotations

# Import User first - every other table references it
from spend_stream.modules.identity.models import User  # noqa: F401

from spend_stream.modules.categories.models import Category  # noqa: F401
from spend_stream.modules.expenses.models import Expense  # noqa: F401
from spend_stream.modules.fx.models import FxRate  # noqa: F401
from spend_stream.modules.ingestion.models import IngestionSettings  # noqa: F401
from spend_stream.modules.merchants.models import MerchantMapping  # noqa: F401
from spend_stream.modules.statements.models import Statement  # noqa: F401
