from datetime import date
from io import BytesIO

import pytest
from openpyxl import load_workbook
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from csv_utils import parse_amount, parse_csv, sanitize_csv_value
from database import Base
from exports import export_report_pdf, export_transactions_xlsx, render_report_html
from models import Account, Transaction, TransactionType
from periods import Period
from schemas import AccountIn
from services import AccountService, CSVService, ReportService


CSV_CONTENT = """Date,Type,Amount,Description,Category,Notes
2024-03-01,income,"1.500,00",Salário,Salário,
05/03/2024,expense,R$ 120.50,Farmácia,Saúde,receita médica
2024-03-07,,-30.00,Padaria,,
"""


def test_parse_amount_handles_brazilian_and_us_formats() -> None:
    assert parse_amount("1.234,56") == 123_456
    assert parse_amount("1,234.56") == 123_456
    assert parse_amount("R$ 10,50") == 1_050
    assert parse_amount("-20.00", allow_negative=True) == -2_000
    with pytest.raises(ValueError):
        parse_amount("-20.00")
    with pytest.raises(ValueError):
        parse_amount("abc")


def test_parse_csv_infers_type_from_sign() -> None:
    rows, errors = parse_csv(CSV_CONTENT)
    assert errors == []
    assert [r.type for r in rows] == [
        TransactionType.income,
        TransactionType.expense,
        TransactionType.expense,
    ]
    assert rows[1].date == date(2024, 3, 5)
    assert rows[1].amount_cents == 12_050
    assert rows[1].notes == "receita médica"


def test_parse_csv_reports_bad_rows() -> None:
    rows, errors = parse_csv("Date,Type,Amount,Description\n2024-13-45,expense,1,x\n")
    assert rows == []
    assert errors and errors[0].startswith("Row 1:")


def test_sanitize_prefixes_formula_triggers() -> None:
    assert sanitize_csv_value("=SUM(A1)") == "\t=SUM(A1)"
    assert sanitize_csv_value("Mercado") == "Mercado"


def test_import_is_all_or_nothing() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        account = AccountService(session).create(
            AccountIn(name="Conta", initial_balance_cents=0)
        )
        service = CSVService(session)

        imported = service.commit(CSV_CONTENT, account_id=account.id)
        assert imported == 3
        assert session.get(Account, account.id).current_balance_cents == (
            150_000 - 12_050 - 3_000
        )

        overdraft = "Date,Type,Amount,Description\n2024-03-10,expense,1,ok\n2024-03-11,expense,999999,too much\n"
        with pytest.raises(ValueError, match="Row 2"):
            service.commit(overdraft, account_id=account.id)
        assert session.scalar(select(func.count()).select_from(Transaction)) == 3
        assert session.get(Account, account.id).current_balance_cents == 134_950


def test_exports_contain_transactions_and_summary() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        account = AccountService(session).create(
            AccountIn(name="Conta", initial_balance_cents=0)
        )
        CSVService(session).commit(CSV_CONTENT, account_id=account.id)

        march = Period("custom", date(2024, 3, 1), date(2024, 3, 31))
        reports = ReportService(session)
        transactions = reports.transactions(march)

        csv_text = CSVService(session).export(transactions)
        assert csv_text.splitlines()[0] == "Date,Type,Amount,Description,Category,Account,Notes"
        assert "Farmácia" in csv_text

        content = export_transactions_xlsx(transactions, reports.summary(march))
        workbook = load_workbook(BytesIO(content))
        assert workbook.sheetnames == ["Transações", "Resumo"]
        assert workbook["Transações"].max_row == 4
        assert workbook["Resumo"]["B2"].value == 1_500.0


def test_report_html_lists_summary_and_category_shares() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        account = AccountService(session).create(
            AccountIn(name="Conta", initial_balance_cents=0)
        )
        CSVService(session).commit(CSV_CONTENT, account_id=account.id)

        march = Period("custom", date(2024, 3, 1), date(2024, 3, 31))
        reports = ReportService(session)
        html = render_report_html(
            reports.transactions(march), reports.summary(march), "01/03/2024 a 31/03/2024"
        )

    assert "Relatório Financeiro" in html
    assert "Período: 01/03/2024 a 31/03/2024" in html
    assert "R$ 1.500,00" in html
    assert "R$ 120,50" in html
    assert "Saúde" in html
    assert "80.1%" in html
    assert "05/03/2024" in html


def test_report_pdf_renders_when_weasyprint_is_available() -> None:
    try:
        import weasyprint  # noqa: F401
    except (ImportError, OSError):
        pytest.skip("WeasyPrint system libraries are not installed")

    summary = {
        "start": date(2024, 3, 1),
        "end": date(2024, 3, 31),
        "income_cents": 0,
        "expense_cents": 0,
        "net_cents": 0,
        "by_category": [],
    }
    assert export_report_pdf([], summary, "março de 2024").startswith(b"%PDF")
