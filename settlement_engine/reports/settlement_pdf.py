"""Downloadable settlement batch report (PDF)."""

import io
from datetime import datetime
from decimal import Decimal

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from settlement_engine.config import settings
from settlement_engine.engine.aggregator import PayoutView, StatusSummary
from settlement_engine.models.settlement import SettlementBatch

GRID = colors.HexColor("#e5e7eb")
HEADER_BG = colors.HexColor("#f1f5f9")

TABLE_STYLE = TableStyle([
    ("BACKGROUND", (0, 0), (-1, 0), HEADER_BG),
    ("TEXTCOLOR", (0, 0), (-1, 0), colors.black),
    ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
    ("INNERGRID", (0, 0), (-1, -1), 0.25, GRID),
    ("BOX", (0, 0), (-1, -1), 0.5, GRID),
    ("ALIGN", (0, 0), (-1, -1), "LEFT"),
    ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
    ("FONTSIZE", (0, 0), (-1, -1), 9),
])


def _money(amount) -> str:
    return f"{settings.currency} {Decimal(str(amount or 0)):,.2f}"


def _table(rows: list[list[str]], widths: list[float]) -> Table:
    tbl = Table(rows, colWidths=[w * mm for w in widths], repeatRows=1)
    tbl.setStyle(TABLE_STYLE)
    return tbl


def render_settlement_pdf(
    batch: SettlementBatch,
    status: StatusSummary,
    payouts: list[PayoutView],
) -> bytes:
    """Render a batch, its status summary and its payout rows as PDF bytes."""
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        leftMargin=18 * mm,
        rightMargin=18 * mm,
        topMargin=18 * mm,
        bottomMargin=18 * mm,
        title=f"Settlement {batch.settlement_date.isoformat()}",
    )

    styles = getSampleStyleSheet()
    styles.add(ParagraphStyle(name="TitleBig", fontSize=18, leading=22, spaceAfter=8))
    styles.add(ParagraphStyle(name="H2", fontSize=12, leading=16, spaceBefore=10, spaceAfter=4,
                              textColor=colors.HexColor("#1f6feb")))
    styles.add(ParagraphStyle(name="Body", fontSize=10, leading=14, spaceAfter=2))

    content = [
        Paragraph(f"Settlement Report: {batch.settlement_date.isoformat()}", styles["TitleBig"]),
        Paragraph(f"Batch: {batch.id}", styles["Body"]),
        Paragraph(f"Status: {batch.status}", styles["Body"]),
        Paragraph(f"Generated at: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}", styles["Body"]),
        Spacer(1, 8),
        Paragraph("Totals", styles["H2"]),
        _table([
            ["Item", "Amount"],
            ["Payments", _money(batch.total_payments)],
            ["Payment count", str(batch.payment_count)],
            ["Insurance", _money(batch.total_insurance)],
            ["Administrative", _money(batch.total_admin)],
            ["Agent commissions", _money(batch.total_agent_commissions)],
            ["Super-agent commissions", _money(batch.total_super_agent_commissions)],
        ], [90, 70]),
        Paragraph("Payout status", styles["H2"]),
        _table(
            [["Category", "Status"]] + [[k.capitalize(), v] for k, v in status.payout_status.items()],
            [90, 70],
        ),
        Spacer(1, 4),
        Paragraph(
            f"Commission payouts: {status.completed}/{status.total} completed "
            f"({status.completion_percentage}%), {status.failed} failed, {status.pending} pending",
            styles["Body"],
        ),
    ]

    if batch.notes:
        content.append(Paragraph(f"Notes: {batch.notes}", styles["Body"]))

    content.append(Paragraph("Commission payouts", styles["H2"]))
    if payouts:
        rows = [["Beneficiary", "Type", "Phone", "Amount", "Status", "Attempts", "Reference"]]
        for view in payouts:
            p = view.payout
            rows.append([
                view.beneficiary_name or p.beneficiary_id,
                p.beneficiary_type.replace("_", " "),
                view.beneficiary_phone or "-",
                _money(p.amount),
                p.status,
                str(p.attempts),
                p.manual_transaction_ref or p.provider_txn_id or "-",
            ])
        content.append(_table(rows, [38, 20, 26, 28, 18, 14, 30]))
    else:
        content.append(Paragraph("None", styles["Body"]))

    doc.build(content)
    return buffer.getvalue()
