import io

import pandas as pd
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.models.database import Base, enable_sqlite_savepoints


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def make_workbook():
    """Build xlsx bytes from ``{sheet_name: rows}``; the first row is the header."""

    def _make(sheets):
        buffer = io.BytesIO()
        with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
            for name, rows in sheets.items():
                pd.DataFrame(rows).to_excel(writer, sheet_name=name, header=False, index=False)
        return buffer.getvalue()

    return _make


@pytest.fixture
def acme_sheets():
    return [
        ("Issuer Info", [["Issuer Name", "Acme Corp"]]),
        ("Journal", [
            ["Cusip", "Transaction Type", "Credit/Debit", "Quantity", "Transaction Date", "Account"],
            ["123456789", "IPO", "Credit", "1000", "01/01/2024", "ACC-1"],
        ]),
    ]
