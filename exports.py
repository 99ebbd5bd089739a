from datetime import datetime
from io import BytesIO
from pathlib import Path
from typing import Optional, Sequence

from jinja2 import Environment, FileSystemLoader, select_autoescape
from openpyxl import Workbook
from openpyxl.styles import Font

from csv_utils import CSV_HEADER, format_brl, owner_label, sanitize_csv_value
from models import Transaction


BOLD = Font(bold=True)
MONEY_FORMAT = '"R$" #,##0.00'

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"
TYPE_LABELS = {"income": "Receita", "expense": "Despesa", "transfer": "Transferência"}

PDF_STYLES = """
@page {
    size: A4;
    margin: 18mm 16mm 20mm 16mm;
    @bottom-center {
        content: "Página " counter(page) " de " counter(pages);
        color: #64748b;
        font-size: 9pt;
    }
}
body { font-family: sans-serif; color: #0f172a; font-size: 10pt; }
h1 { font-size: 18pt; margin-bottom: 4pt; }
h2 { font-size: 13pt; border-bottom: 1px solid #e2e8f0; padding-bottom: 2pt; }
table { width: 100%; border-collapse: collapse; }
th, td { text-align: left; padding: 3pt 4pt; border-bottom: 1px solid #e2e8f0; }
td:last-child { text-align: right; white-space: nowrap; }
.muted { color: #64748b; }
.positive { color: #16a34a; }
.negative { color: #dc2626; }
"""

_env = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=select_autoescape(["html"]),
)
_env.filters["brl"] = format_brl


def export_transactions_xlsx(
    transactions: Sequence[Transaction], summary: dict[str, object]
) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = "Transações"

    ws.append(CSV_HEADER)
    for c in range(1, len(CSV_HEADER) + 1):
        ws.cell(row=1, column=c).font = BOLD

    amount_idx = CSV_HEADER.index("Amount") + 1
    for txn in transactions:
        ws.append(
            [
                txn.date,
                txn.type.value,
                txn.amount_cents / 100,
                sanitize_csv_value(txn.description),
                sanitize_csv_value(txn.category.name if txn.category else ""),
                sanitize_csv_value(owner_label(txn)),
                sanitize_csv_value(txn.notes or ""),
            ]
        )
    for r in range(2, ws.max_row + 1):
        ws.cell(row=r, column=amount_idx).number_format = MONEY_FORMAT
        ws.cell(row=r, column=1).number_format = "yyyy-mm-dd"
    ws.column_dimensions["D"].width = 42

    summary_ws = wb.create_sheet("Resumo")
    summary_ws.append(["Período", f"{summary['start']} a {summary['end']}"])
    summary_ws.append(["Receitas", summary["income_cents"] / 100])
    summary_ws.append(["Despesas", summary["expense_cents"] / 100])
    summary_ws.append(["Saldo", summary["net_cents"] / 100])
    for r in range(2, 5):
        summary_ws.cell(row=r, column=1).font = BOLD
        summary_ws.cell(row=r, column=2).number_format = MONEY_FORMAT

    summary_ws.append([])
    summary_ws.append(["Categoria", "Tipo", "Total"])
    header_row = summary_ws.max_row
    for c in range(1, 4):
        summary_ws.cell(row=header_row, column=c).font = BOLD
    for item in summary["by_category"]:
        summary_ws.append([item["name"], item["type"], item["total_cents"] / 100])
        summary_ws.cell(row=summary_ws.max_row, column=3).number_format = MONEY_FORMAT
    summary_ws.column_dimensions["A"].width = 32

    buffer = BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


def render_report_html(
    transactions: Sequence[Transaction],
    summary: dict[str, object],
    period_label: str,
    generated_at: Optional[datetime] = None,
) -> str:
    expense_total = summary["expense_cents"] or 0
    categories = [
        {
            "name": item["name"],
            "total_cents": item["total_cents"],
            "share": item["total_cents"] * 100 / expense_total if expense_total else 0.0,
        }
        for item in summary["by_category"]
        if item["type"] == "expense"
    ]
    return _env.get_template("report.html").render(
        transactions=transactions,
        summary=summary,
        categories=categories,
        period_label=period_label,
        generated_at=generated_at or datetime.now(),
        type_labels=TYPE_LABELS,
    )


def export_report_pdf(
    transactions: Sequence[Transaction],
    summary: dict[str, object],
    period_label: str,
) -> bytes:
    try:
        from weasyprint import CSS, HTML
    except (ImportError, OSError) as exc:
        raise RuntimeError(
            "PDF export requires WeasyPrint system dependencies; install them for your OS and retry."
        ) from exc

    html = render_report_html(transactions, summary, period_label)
    return HTML(string=html, base_url=str(TEMPLATES_DIR)).write_pdf(
        stylesheets=[CSS(string=PDF_STYLES)]
    )
