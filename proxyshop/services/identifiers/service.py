import logging

from sqlalchemy import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session as DBSession

from proxyshop.core.config import settings
from proxyshop.models.public_id_allocation import PublicIdAllocation
from proxyshop.services.errors import IdentifierUnavailable

logger = logging.getLogger(__name__)


def format_public_id(prefix: str, value: int, width: int) -> str:
    """CM + zero padded counter; wider values are kept as is (CM1000000)."""
    return f"{prefix}{value:0{width}d}"


class IdentifierIssuer:
    """
    Issues CM000001-style identifiers from a durable counter.
    The allocation row is written in the caller's transaction: distinct under
    concurrency, monotonic, gaps on rollback are fine.
    """

    def __init__(self, db: DBSession, prefix: str | None = None, width: int | None = None):
        self.db = db
        self.prefix = prefix if prefix is not None else settings.public_id_prefix
        self.width = width if width is not None else settings.public_id_width

    def next(self) -> str:
        try:
            result = self.db.execute(insert(PublicIdAllocation).values())
            value = result.inserted_primary_key[0]
        except SQLAlchemyError as e:
            logger.error(
                "identifier_counter_unavailable",
                extra={"error": type(e).__name__},
                exc_info=True,
            )
            raise IdentifierUnavailable("identifier counter unavailable") from e
        return format_public_id(self.prefix, int(value), self.width)
