import logging
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session as DBSession

from proxyshop.models.user import User
from proxyshop.services.errors import InsufficientFunds

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    """Decimal rounded to cents; floats go through str to avoid binary noise."""
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


class BalanceService:
    """
    USD balance on User. All mutations lock the user row (FOR UPDATE) and only
    flush: commit/rollback is done by whoever owns the unit of work.
    """

    def __init__(self, db: DBSession):
        self.db = db

    def get_user(self, user_id: str) -> User | None:
        return self.db.query(User).filter(User.telegram_id == str(user_id)).one_or_none()

    def get_or_create(self, user_id: str, username: str | None = None) -> User:
        user = self.get_user(user_id)
        if user:
            if username and user.username != username:
                user.username = username
                self.db.flush()
            return user
        try:
            with self.db.begin_nested():
                user = User(telegram_id=str(user_id), username=username, balance=Decimal("0.00"), proxies_purchased=0)
                self.db.add(user)
            logger.info("user_registered", extra={"user_id": str(user_id)})
            return user
        except IntegrityError:
            # registered concurrently
            return self.db.query(User).filter(User.telegram_id == str(user_id)).one()

    def get_balance(self, user_id: str) -> Decimal:
        user = self.get_user(user_id)
        if not user:
            return to_money(0)
        return to_money(user.balance or 0)

    def lock(self, user_id: str) -> User:
        """SELECT ... FOR UPDATE on the user row, registering the user first if needed."""
        self.get_or_create(user_id)
        return (
            self.db.query(User)
            .filter(User.telegram_id == str(user_id))
            .with_for_update()
            .populate_existing()
            .one()
        )

    def debit(self, user_id: str, amount) -> Decimal:
        amount = self._positive(amount)
        user = self.lock(user_id)
        current = to_money(user.balance or 0)
        if amount > current:
            logger.info(
                "balance_insufficient",
                extra={"user_id": str(user_id), "amount": str(amount), "new_balance": str(current)},
            )
            raise InsufficientFunds(
                "insufficient funds", balance=current, required=amount
            )
        user.balance = current - amount
        self.db.flush()
        logger.info(
            "balance_debited",
            extra={"user_id": str(user_id), "amount": str(amount), "new_balance": str(user.balance)},
        )
        return to_money(user.balance)

    def credit(self, user_id: str, amount) -> Decimal:
        amount = self._positive(amount)
        user = self.lock(user_id)
        user.balance = to_money(user.balance or 0) + amount
        self.db.flush()
        logger.info(
            "balance_credited",
            extra={"user_id": str(user_id), "amount": str(amount), "new_balance": str(user.balance)},
        )
        return to_money(user.balance)

    def increment_purchased(self, user_id: str, n: int) -> None:
        if n <= 0:
            return
        self.get_or_create(user_id)
        self.db.execute(
            update(User)
            .where(User.telegram_id == str(user_id))
            .values(proxies_purchased=User.proxies_purchased + n)
        )
        self.db.flush()

    def get_purchased_count(self, user_id: str) -> int:
        user = self.get_user(user_id)
        if not user:
            return 0
        self.db.refresh(user)
        return int(user.proxies_purchased or 0)

    @staticmethod
    def _positive(amount) -> Decimal:
        value = to_money(amount)
        if value <= 0:
            raise ValueError(f"amount must be positive, got {amount}")
        return value
