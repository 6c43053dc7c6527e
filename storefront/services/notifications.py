import logging
from html import escape

from storefront.core.config import settings
from storefront.models.invoice import Invoice
from storefront.models.order import Order
from storefront.services import mailer

logger = logging.getLogger("storefront.notifications")


def _amount(cents: int, currency: str) -> str:
    return f"{cents / 100:.2f} {currency}"


def download_url(token: str) -> str:
    return f"{settings.API_BASE_URL}/downloads/{token}"


def _summary_html(order: Order) -> str:
    lines = []
    for item in order.items:
        line = (
            f"<strong>{escape(item.product_name_snapshot)}</strong> x{item.quantity}"
            f" - {_amount(item.line_total, order.currency)}"
        )
        link = item.download_links[0] if item.download_links else None
        if link:
            line += f'<div><a href="{download_url(link.token)}">Télécharger</a> (lien unique)</div>'
        lines.append(f"<li>{line}</li>")
    return f"<ul>{''.join(lines)}</ul>"


def _recipient(order: Order) -> str:
    return order.user.email or order.billing_email_snapshot


def send_order_confirmation_email(order: Order) -> bool:
    number = order.order_number or str(order.id)
    paid_on = (order.paid_at or order.created_at).strftime("%d/%m/%Y")
    name = escape(order.billing_name_snapshot or order.user.display_name)
    account_url = f"{settings.frontend_base_url}/mon-compte"

    html = (
        f"Bonjour {name},<br /><br />"
        f"Merci pour votre commande <strong>{number}</strong> du {paid_on}.<br />"
        f"Montant réglé : <strong>{_amount(order.total_paid, order.currency)}</strong>."
        f"{_summary_html(order)}"
        f'<a href="{account_url}">Retrouver vos commandes</a>'
        "<br /><br />L'équipe ComptaMatch."
    )
    text = (
        f"Merci pour votre commande {number} du {paid_on}.\n"
        f"Montant réglé : {_amount(order.total_paid, order.currency)}.\n"
        f"Vos téléchargements : {account_url}\n"
    )
    sent = mailer.send_email(
        to=_recipient(order),
        subject=f"Confirmation de votre commande {number}",
        html=html,
        text=text,
    )
    logger.info("order confirmation email order_id=%s sent=%s", order.id, sent)
    return sent


def send_invoice_available_email(invoice: Invoice) -> bool:
    order = invoice.order
    url = f"{settings.API_BASE_URL}/invoices/{invoice.id}/download"
    html = (
        f"Bonjour {escape(invoice.billing_name)},<br /><br />"
        f"Votre facture <strong>{invoice.invoice_number}</strong> du "
        f"{invoice.issue_date:%d/%m/%Y} pour la commande "
        f"{order.order_number or order.id} est disponible.<br />"
        f'<a href="{url}">Télécharger la facture</a>'
        "<br /><br />L'équipe ComptaMatch."
    )
    sent = mailer.send_email(
        to=_recipient(order),
        subject=f"Votre facture {invoice.invoice_number}",
        html=html,
        text=f"Votre facture {invoice.invoice_number} est disponible : {url}\n",
    )
    logger.info("invoice email invoice=%s sent=%s", invoice.invoice_number, sent)
    return sent
