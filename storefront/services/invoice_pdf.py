from pathlib import Path
from xml.sax.saxutils import escape as xml_escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from storefront.models.invoice import Invoice

PRIMARY = colors.HexColor("#0F172A")
MUTED = colors.HexColor("#6B7280")
LIGHT_GRAY = colors.HexColor("#F3F4F6")
LINE_COLOR = colors.HexColor("#E3E7ED")

MARGIN = 16 * mm


def _fmt_amount(cents: int, currency: str) -> str:
    value = f"{cents / 100:,.2f}".replace(",", " ").replace(".", ",")
    return f"{value} {currency}"


def _p(text: str | None, style: ParagraphStyle) -> Paragraph:
    return Paragraph(xml_escape(text or ""), style)


def render_invoice_pdf(invoice: Invoice, target: Path) -> Path:
    target.parent.mkdir(parents=True, exist_ok=True)

    styles = getSampleStyleSheet()
    title = ParagraphStyle("title", parent=styles["Title"], textColor=PRIMARY, alignment=2)
    body = ParagraphStyle("body", parent=styles["Normal"], fontSize=9.5, leading=12)
    muted = ParagraphStyle("muted", parent=body, textColor=MUTED)

    order = invoice.order
    currency = invoice.currency

    story = [
        Paragraph("FACTURE", title),
        _p(f"N° {invoice.invoice_number}", muted),
        _p(f"Date : {invoice.issue_date:%d/%m/%Y}", muted),
        Spacer(1, 8 * mm),
    ]

    seller = [
        invoice.seller_name,
        invoice.seller_address,
        f"SIRET : {invoice.seller_siret}" if invoice.seller_siret else None,
        f"TVA : {invoice.seller_vat_number}" if invoice.seller_vat_number else None,
    ]
    buyer = [invoice.billing_name, invoice.billing_address, invoice.billing_email]
    parties = Table(
        [
            [_p("Vendeur", muted), _p("Client", muted)],
            [
                [_p(line, body) for line in seller if line],
                [_p(line, body) for line in buyer if line],
            ],
        ],
        colWidths=["50%", "50%"],
    )
    parties.setStyle(TableStyle([("VALIGN", (0, 0), (-1, -1), "TOP")]))
    story += [parties, Spacer(1, 8 * mm)]

    rows = [["Produit", "Qté", "Prix unitaire", "Total"]]
    for item in order.items:
        rows.append(
            [
                _p(item.product_name_snapshot, body),
                str(item.quantity),
                _fmt_amount(item.price_cents, currency),
                _fmt_amount(item.line_total, currency),
            ]
        )
    if order.discount_amount:
        rows.append(["Remise", "", "", _fmt_amount(-order.discount_amount, currency)])
    rows.append(["Total HT", "", "", _fmt_amount(invoice.total_ht, currency)])
    rows.append(["TVA", "", "", _fmt_amount(invoice.total_tva, currency)])
    rows.append(["Total TTC", "", "", _fmt_amount(invoice.total_ttc, currency)])

    lines = Table(rows, colWidths=["52%", "10%", "19%", "19%"], repeatRows=1)
    lines.setStyle(
        TableStyle(
            [
                ("BACKGROUND", (0, 0), (-1, 0), LIGHT_GRAY),
                ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                ("FONTNAME", (0, -1), (-1, -1), "Helvetica-Bold"),
                ("ALIGN", (1, 0), (-1, -1), "RIGHT"),
                ("LINEBELOW", (0, 0), (-1, -1), 0.25, LINE_COLOR),
                ("FONTSIZE", (0, 0), (-1, -1), 9.5),
            ]
        )
    )
    story += [lines, Spacer(1, 6 * mm)]

    if invoice.seller_vat_mention:
        story.append(_p(invoice.seller_vat_mention, muted))
    story.append(_p(f"Commande {order.order_number or order.id}", muted))

    doc = SimpleDocTemplate(
        str(target),
        pagesize=A4,
        leftMargin=MARGIN,
        rightMargin=MARGIN,
        topMargin=MARGIN,
        bottomMargin=MARGIN,
        title=f"Facture {invoice.invoice_number}",
    )
    doc.build(story)
    return target
