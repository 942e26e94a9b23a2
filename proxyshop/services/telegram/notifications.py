"""
User notifications sent from workers. Best effort: a failed message never
changes the outcome it reports.
"""
import logging

import httpx

from proxyshop.models.deposit import STATUS_EXPIRED, STATUS_PAID
from proxyshop.services.deposits.service import DepositStatus
from proxyshop.services.purchases.outcome import AbortReason, PurchaseOutcome, PurchaseState
from proxyshop.services.telegram.client import TelegramAPIError, TelegramClient

logger = logging.getLogger(__name__)

ABORT_TEXTS = {
    AbortReason.INVALID_REQUEST: "❌ Некорректные параметры заказа.",
    AbortReason.DUPLICATE_REQUEST: "⏳ Этот заказ уже обрабатывается.",
    AbortReason.PRICE_UNAVAILABLE: "❌ Не удалось получить цену. Попробуйте позже.",
    AbortReason.INSUFFICIENT_FUNDS: "❌ Недостаточно средств на балансе.",
    AbortReason.PROVISIONING_FAILED: "❌ Не удалось оформить заказ. Средства возвращены на баланс.",
    AbortReason.CREDENTIALS_NOT_FOUND: "❌ Прокси не активировались вовремя. Средства возвращены на баланс.",
}


def deposit_text(status: DepositStatus) -> str | None:
    if status.status == STATUS_PAID:
        return (
            "<b>✅ Счёт успешно оплачен. Средства зачислены на ваш баланс.</b>\n\n"
            f"├ Платёжная система: <b>CryptoBot</b>\n"
            f"├ ID: #CB{status.invoice_id}\n"
            f"├ Сумма: <b>${status.amount}</b>\n"
            f"╰ Баланс: <b>${status.new_balance}</b>"
        )
    if status.status == STATUS_EXPIRED:
        return "⏰ Счёт истёк.\n\nСоздайте новый счёт для пополнения баланса."
    # cancelled by the user: nothing to say
    return None


def purchase_text(outcome: PurchaseOutcome) -> str:
    if outcome.state == PurchaseState.ABORTED:
        return ABORT_TEXTS.get(outcome.reason, "❌ Покупка не удалась.")
    lines = [f"<b>✅ Покупка выполнена</b> ({outcome.claimed} из {outcome.requested})", ""]
    for claim in outcome.claims:
        lines.append(
            f"<b>{claim['public_id']}</b> {claim['ip']}:{claim['port_http']} "
            f"{claim['login']}:{claim['password']}"
        )
    if outcome.state == PurchaseState.PARTIALLY_SETTLED:
        lines.append("")
        lines.append(f"↩️ Возвращено на баланс: <b>${outcome.refunded}</b>")
    lines.append(f"💰 Баланс: <b>${outcome.new_balance}</b>")
    return "\n".join(lines)


def notify(user_id: str, text: str | None, client: TelegramClient | None = None) -> bool:
    if not text:
        return False
    client = client or TelegramClient()
    try:
        client.send_message(user_id, text)
    except (httpx.HTTPError, TelegramAPIError, ValueError):
        logger.warning("notification_failed", extra={"user_id": str(user_id)})
        return False
    return True
