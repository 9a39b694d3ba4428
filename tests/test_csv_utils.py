import csv
from datetime import date, datetime
from decimal import Decimal
from io import StringIO

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from csv_utils import (
    EXPORT_HEADER,
    clean_amount,
    export_transactions,
    parse_date,
    parse_import_csv,
    sanitize_csv_value,
)
from database import Base
from models import AccountType, TransactionType
from schemas import AccountIn, TransactionIn
from services import AccountService, TransactionService


@pytest.mark.parametrize(
    "value",
    [
        "2025-03-07",
        "07.03.2025",
        "2025-03-07T18:30:00",
        "2025-03-07T18:30:00Z",
        date(2025, 3, 7),
        datetime(2025, 3, 7, 9, 0),
    ],
)
def test_parse_date_accepts_common_formats(value) -> None:
    assert parse_date(value) == date(2025, 3, 7)


@pytest.mark.parametrize("value", ["03/07/2025", "yesterday", 20250307])
def test_parse_date_rejects_other_values(value) -> None:
    with pytest.raises(ValueError):
        parse_date(value)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("€12,50", "12.50"),
        ("1.234,50", "1234.50"),
        ("Rp 15000", "15000"),
        ("EUR -3.20", "-3.20"),
        ("1,234", "1234"),
        ("Rp 1.234", "1234"),
        ("1.234.567", "1234567"),
        ("1,234.56", "1234.56"),
        ("0.125", "0.125"),
        ("10.005", "10005"),
        ("10.0051", "10.0051"),
    ],
)
def test_clean_amount(raw: str, expected: str) -> None:
    assert clean_amount(raw) == expected


def test_parse_import_csv_maps_headers() -> None:
    content = (
        "Date, Description ,Amount,TYPE,Category,Account,To Account,Ignored\n"
        "2025-01-02,Rent,800,transfer,,Checking,Savings,x\n"
        ",,,,,,,\n"
    )
    assert parse_import_csv(content) == [
        {
            "date": "2025-01-02",
            "description": "Rent",
            "amount": "800",
            "type": "transfer",
            "account": "Checking",
            "to_account": "Savings",
        }
    ]


def test_sanitize_blocks_formulas() -> None:
    assert sanitize_csv_value("=SUM(A1:A2)") == "\t=SUM(A1:A2)"
    assert sanitize_csv_value("https://example.com") == "\thttps://example.com"
    assert sanitize_csv_value("  Groceries ") == "Groceries"
    assert sanitize_csv_value("") == ""


def test_export_writes_header_and_sanitized_rows() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        accounts = AccountService(session, 1)
        checking = accounts.create(
            AccountIn(name="Checking", account_type=AccountType.checking)
        )
        savings = accounts.create(
            AccountIn(name="Savings", account_type=AccountType.savings)
        )
        service = TransactionService(session, 1)
        service.create(
            TransactionIn(
                account_id=checking.id,
                transaction_type=TransactionType.expense,
                amount=Decimal("4.50"),
                description="=HYPERLINK(\"x\")",
                date=date(2025, 2, 1),
                tags=["coffee", "work"],
            )
        )
        service.create(
            TransactionIn(
                account_id=checking.id,
                to_account_id=savings.id,
                transaction_type=TransactionType.transfer,
                amount=Decimal("100"),
                description="Top up",
                date=date(2025, 2, 2),
            )
        )

        text = export_transactions(service.all_matching())

    rows = list(csv.reader(StringIO(text)))
    assert rows[0] == EXPORT_HEADER
    assert rows[1] == [
        "2025-02-01",
        "\t=HYPERLINK(\"x\")",
        "4.50",
        "expense",
        "",
        "Checking",
        "",
        "coffee;work",
        "",
    ]
    assert rows[2][2:7] == ["100.00", "transfer", "", "Checking", "Savings"]
