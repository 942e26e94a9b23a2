from proxyshop.models.deposit import Deposit
from proxyshop.models.public_id_allocation import PublicIdAllocation
from proxyshop.models.reconciliation import ReconciliationLog
from proxyshop.models.user import User
from proxyshop.models.user_proxy import UserProxy

__all__ = [
    "Deposit",
    "PublicIdAllocation",
    "ReconciliationLog",
    "User",
    "UserProxy",
]
