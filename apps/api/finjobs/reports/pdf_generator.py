"""PDF statements and reports rendered with reportlab."""

from __future__ import annotations

import io
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from reportlab.graphics.charts.piecharts import Pie
from reportlab.graphics.shapes import Drawing
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, letter
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

logger = logging.getLogger(__name__)

MAX_TABLE_ROWS = 500
PIE_COLORS = ["#FF6384", "#36A2EB", "#FFCE56", "#4BC0C0", "#9966FF", "#FF9F40", "#C9CBCF"]


def _money(value: Any) -> str:
    try:
        return f"${float(value):,.2f}"
    except (TypeError, ValueError):
        return "$0.00"


def _date(value: Any) -> str:
    if not value:
        return ""
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).strftime("%m/%d/%Y")
    except ValueError:
        return str(value)


class PDFReportGenerator:
    """Render one of the supported financial documents to PDF bytes."""

    REPORT_TYPES = (
        "transaction-statement", "portfolio-report", "financial-summary", "tax-report"
    )

    def __init__(self):
        self.styles = getSampleStyleSheet()
        self._setup_custom_styles()

    def _setup_custom_styles(self):
        self.styles.add(
            ParagraphStyle(
                name="CustomTitle",
                parent=self.styles["Title"],
                fontSize=20,
                textColor=colors.HexColor("#1a1a1a"),
                spaceAfter=12,
            )
        )
        self.styles.add(
            ParagraphStyle(
                name="CustomHeading",
                parent=self.styles["Heading1"],
                fontSize=14,
                textColor=colors.HexColor("#333333"),
                spaceAfter=8,
            )
        )

    def generate(
        self,
        report_type: str,
        data: dict[str, Any],
        options: Optional[dict[str, Any]] = None,
    ) -> bytes:
        """Render ``report_type`` from ``data``.

        Args:
            report_type: One of ``REPORT_TYPES``
            data: Report content (summary, transactions, holdings, ...)
            options: Layout options (page_size A4/letter, layout portrait/landscape)

        Returns:
            PDF file content as bytes
        """
        builders = {
            "transaction-statement": self._transaction_statement,
            "portfolio-report": self._portfolio_report,
            "financial-summary": self._financial_summary,
            "tax-report": self._tax_report,
        }
        if report_type not in builders:
            raise ValueError(f"Unknown PDF type: {report_type}")

        options = options or {}
        pagesize = letter if options.get("page_size") == "letter" else A4
        if options.get("layout") == "landscape":
            pagesize = (pagesize[1], pagesize[0])

        buffer = io.BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=pagesize,
            rightMargin=50,
            leftMargin=50,
            topMargin=50,
            bottomMargin=50,
            title=options.get("title") or report_type.replace("-", " ").title(),
        )
        story = builders[report_type](data)
        doc.build(story)
        buffer.seek(0)
        return buffer.read()

    # Document builders

    def _header(self, title: str, data: dict[str, Any]) -> list:
        generated = datetime.now(timezone.utc).strftime("%B %d %Y, %H:%M UTC")
        story = [
            Paragraph(title, self.styles["CustomTitle"]),
            Paragraph(f"Generated: {generated}", self.styles["Normal"]),
        ]
        date_range = data.get("date_range") or {}
        if date_range.get("start") and date_range.get("end"):
            story.append(
                Paragraph(
                    f"Period: {_date(date_range['start'])} - {_date(date_range['end'])}",
                    self.styles["Normal"],
                )
            )
        story.append(Spacer(1, 18))
        return story

    def _section(self, title: str) -> list:
        return [Paragraph(title, self.styles["CustomHeading"]), Spacer(1, 6)]

    def _transaction_statement(self, data: dict[str, Any]) -> list:
        story = self._header("Transaction Statement", data)

        summary = data.get("summary")
        if summary:
            income = float(summary.get("total_income") or 0)
            expenses = float(summary.get("total_expenses") or 0)
            story += self._section("Summary")
            story.append(
                self._key_value_table(
                    [
                        ("Total Transactions", str(summary.get("total_transactions", 0))),
                        ("Total Income", _money(income)),
                        ("Total Expenses", _money(expenses)),
                        ("Net Amount", _money(income - expenses)),
                    ]
                )
            )
            story.append(Spacer(1, 18))

        transactions = data.get("transactions") or []
        if transactions:
            story += self._section("Transactions")
            rows = [
                [
                    _date(t.get("date")),
                    t.get("description") or "N/A",
                    t.get("category") or "Uncategorized",
                    _money(t.get("amount", 0)),
                ]
                for t in transactions
            ]
            story.append(
                self._create_data_table(["Date", "Description", "Category", "Amount"], rows)
            )
        return story

    def _portfolio_report(self, data: dict[str, Any]) -> list:
        story = self._header("Portfolio Report", data)

        summary = data.get("summary")
        if summary:
            story += self._section("Portfolio Summary")
            story.append(
                self._key_value_table(
                    [
                        ("Total Value", _money(summary.get("total_value", 0))),
                        ("Total Gain/Loss", _money(summary.get("total_gain_loss", 0))),
                        ("Return", f"{float(summary.get('total_return') or 0) * 100:.2f}%"),
                    ]
                )
            )
            story.append(Spacer(1, 18))

        allocation = data.get("asset_allocation") or []
        if allocation:
            story += self._section("Asset Allocation")
            story.append(self._allocation_chart(allocation))
            story.append(Spacer(1, 18))

        holdings = data.get("holdings") or []
        if holdings:
            story += self._section("Holdings")
            rows = [
                [
                    h.get("symbol") or "N/A",
                    f"{float(h.get('shares') or 0):g}",
                    _money(h.get("current_price", h.get("price", 0))),
                    _money(h.get("current_value", h.get("value", 0))),
                    _money(h.get("gain_loss", 0)),
                ]
                for h in holdings
            ]
            story.append(
                self._create_data_table(["Symbol", "Shares", "Price", "Value", "Gain/Loss"], rows)
            )
        return story

    def _financial_summary(self, data: dict[str, Any]) -> list:
        story = self._header("Financial Summary", data)

        overview = data.get("overview") or data.get("summary") or {}
        if overview:
            story += self._section("Overview")
            story.append(
                self._key_value_table(
                    [
                        (key.replace("_", " ").title(), _money(value)
                         if isinstance(value, (int, float)) else str(value))
                        for key, value in overview.items()
                    ]
                )
            )
            story.append(Spacer(1, 18))

        categories = data.get("categories") or []
        if categories:
            story += self._section("Spending by Category")
            rows = [
                [
                    c.get("category") or c.get("name") or "Uncategorized",
                    _money(c.get("amount", 0)),
                    f"{float(c.get('percentage') or 0):.1f}%",
                ]
                for c in categories
            ]
            story.append(self._create_data_table(["Category", "Amount", "Share"], rows))
            story.append(Spacer(1, 18))

        budgets = data.get("budgets") or []
        if budgets:
            story += self._section("Budgets")
            rows = [
                [
                    b.get("category") or b.get("name") or "",
                    _money(b.get("limit", 0)),
                    _money(b.get("spent", 0)),
                    _money((b.get("limit", 0) or 0) - (b.get("spent", 0) or 0)),
                ]
                for b in budgets
            ]
            story.append(
                self._create_data_table(["Budget", "Limit", "Spent", "Remaining"], rows)
            )
        return story

    def _tax_report(self, data: dict[str, Any]) -> list:
        tax_year = data.get("tax_year") or datetime.now(timezone.utc).year
        story = self._header(f"Tax Report {tax_year}", data)

        summary = data.get("tax_summary")
        if summary:
            story += self._section("Tax Summary")
            story.append(
                self._key_value_table(
                    [
                        ("Taxable Income", _money(summary.get("taxable_income", 0))),
                        ("Tax Deductions", _money(summary.get("deductions", 0))),
                        ("Capital Gains", _money(summary.get("capital_gains", 0))),
                        ("Capital Losses", _money(summary.get("capital_losses", 0))),
                        ("Estimated Tax", _money(summary.get("estimated_tax", 0))),
                    ]
                )
            )
            story.append(Spacer(1, 18))

        documents = data.get("tax_documents") or []
        if documents:
            story += self._section("Tax Documents")
            rows = [
                [
                    d.get("type") or "Unknown",
                    d.get("description") or "N/A",
                    _money(d.get("amount", 0)),
                ]
                for d in documents
            ]
            story.append(self._create_data_table(["Document", "Description", "Amount"], rows))
        return story

    # Flowables

    def _allocation_chart(self, allocation: list[dict[str, Any]]) -> Drawing:
        drawing = Drawing(400, 200)
        pie = Pie()
        pie.x, pie.y, pie.width, pie.height = 120, 15, 170, 170
        pie.data = [max(float(a.get("percentage", 0) or 0), 0.0001) for a in allocation]
        pie.labels = [str(a.get("category", "Other")) for a in allocation]
        for i in range(len(allocation)):
            pie.slices[i].fillColor = colors.HexColor(PIE_COLORS[i % len(PIE_COLORS)])
        drawing.add(pie)
        return drawing

    def _key_value_table(self, pairs: list[tuple[str, str]]) -> Table:
        table = Table([list(p) for p in pairs], colWidths=[2.5 * inch, 2.5 * inch])
        table.setStyle(
            TableStyle(
                [
                    ("FONTNAME", (0, 0), (0, -1), "Helvetica-Bold"),
                    ("FONTSIZE", (0, 0), (-1, -1), 10),
                    ("BOTTOMPADDING", (0, 0), (-1, -1), 4),
                ]
            )
        )
        return table

    def _create_data_table(self, headers: list[str], rows: list[list[str]]) -> Table:
        if not rows:
            return Table([["No data"]], colWidths=[6 * inch])

        if len(rows) > MAX_TABLE_ROWS:
            logger.info(f"Truncating PDF table from {len(rows)} to {MAX_TABLE_ROWS} rows")
        data = [headers] + rows[:MAX_TABLE_ROWS]

        table = Table(data, colWidths=[6.5 * inch / len(headers)] * len(headers), repeatRows=1)
        table.setStyle(
            TableStyle(
                [
                    ("BACKGROUND", (0, 0), (-1, 0), colors.grey),
                    ("TEXTCOLOR", (0, 0), (-1, 0), colors.whitesmoke),
                    ("ALIGN", (0, 0), (-1, -1), "LEFT"),
                    ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                    ("FONTSIZE", (0, 0), (-1, 0), 10),
                    ("BOTTOMPADDING", (0, 0), (-1, 0), 8),
                    ("BACKGROUND", (0, 1), (-1, -1), colors.beige),
                    ("GRID", (0, 0), (-1, -1), 0.5, colors.black),
                    ("FONTSIZE", (0, 1), (-1, -1), 8),
                ]
            )
        )
        return table
