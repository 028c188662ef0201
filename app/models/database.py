import logging
import os
from datetime import datetime

from dotenv import load_dotenv
from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.orm import declarative_base, sessionmaker

load_dotenv()

logger = logging.getLogger(__name__)

Base = declarative_base()


class Issuer(Base):
    __tablename__ = 'issuers'

    id = Column(Integer, primary_key=True, autoincrement=True)
    issuer_name = Column(String(255), nullable=False, index=True)
    display_name = Column(String(255))
    address = Column(String(500))
    telephone = Column(String(100))
    tax_id = Column(String(100))
    incorporation = Column(String(255))
    underwriter = Column(String(255))
    share_info = Column(Text)
    notes = Column(Text)
    forms_sl_status = Column(String(255))
    timeframe_for_separation = Column(String(255))
    separation_ratio = Column(String(255))
    exchange_platform = Column(String(255))
    timeframe_for_bc = Column(String(255))
    us_counsel = Column(String(255))
    offshore_counsel = Column(String(255))
    description = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=True)


class Security(Base):
    __tablename__ = 'securities'

    id = Column(Integer, primary_key=True, autoincrement=True)
    issuer_id = Column(Integer, ForeignKey('issuers.id', ondelete='CASCADE'), nullable=False, index=True)
    cusip = Column(String(20), nullable=False)  # 'N/A' for non-CUSIP classes
    class_name = Column(String(255), default='Unknown')
    issue_name = Column(String(255))
    issue_ticker = Column(String(50))
    trading_platform = Column(String(100))
    total_authorized_shares = Column(BigInteger, default=0)
    status = Column(String(50), default='ACTIVE')
    import_key = Column(String(255), unique=True, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('issuer_id', 'cusip', name='uq_securities_issuer_cusip'),
    )


class Officer(Base):
    __tablename__ = 'officers'

    id = Column(Integer, primary_key=True, autoincrement=True)
    issuer_id = Column(Integer, ForeignKey('issuers.id', ondelete='CASCADE'), nullable=False, index=True)
    officer_name = Column(String(255), nullable=False)
    officer_position = Column(String(255), default='Unknown')
    import_key = Column(String(255), unique=True, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Shareholder(Base):
    __tablename__ = 'shareholders'

    id = Column(Integer, primary_key=True, autoincrement=True)
    issuer_id = Column(Integer, ForeignKey('issuers.id', ondelete='CASCADE'), nullable=False, index=True)
    account_number = Column(String(100), nullable=True, index=True)
    first_name = Column(String(255))
    last_name = Column(String(255))
    address = Column(String(500))
    city = Column(String(100))
    state = Column(String(100))
    zip = Column(String(20))
    country = Column(String(100))
    taxpayer_id = Column(String(100))
    tin_status = Column(String(50))
    email = Column(String(255))
    phone = Column(String(50))
    dob = Column(Date, nullable=True)
    holder_type = Column(String(100))
    lei = Column(String(50))
    ownership_percentage = Column(Float, default=0)
    ofac_date = Column(Date, nullable=True)
    ofac_results = Column(String(255))
    import_key = Column(String(255), unique=True, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=True)


class Transfer(Base):
    """Transfer-journal entry. Quantity is never negative; direction lives in credit_debit."""
    __tablename__ = 'transfers'

    id = Column(Integer, primary_key=True, autoincrement=True)
    issuer_id = Column(Integer, ForeignKey('issuers.id', ondelete='CASCADE'), nullable=False, index=True)
    shareholder_id = Column(Integer, ForeignKey('shareholders.id', ondelete='SET NULL'), nullable=True, index=True)
    restriction_id = Column(Integer, ForeignKey('restriction_templates.id', ondelete='SET NULL'), nullable=True)
    cusip = Column(String(20), index=True)
    issue_name = Column(String(255))
    issue_ticker = Column(String(50))
    trading_platform = Column(String(100))
    security_type = Column(String(255))
    issuance_type = Column(String(255))
    shareholder_account = Column(String(100))
    transaction_type = Column(String(100), nullable=False)
    credit_debit = Column(String(10), nullable=False)
    share_quantity = Column(BigInteger, nullable=False, default=0)
    transaction_date = Column(Date, nullable=True)
    certificate_type = Column(String(100), default='Book Entry')
    status = Column(String(50), default='ACTIVE')
    notes = Column(Text, default='NIL')
    raw_row = Column(JSON, nullable=True)
    import_key = Column(String(255), unique=True, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index('idx_transfers_issuer_cusip_date', 'issuer_id', 'cusip', 'transaction_date'),
    )


class RecordkeepingEntry(Base):
    __tablename__ = 'recordkeeping_entries'

    id = Column(Integer, primary_key=True, autoincrement=True)
    issuer_id = Column(Integer, ForeignKey('issuers.id', ondelete='CASCADE'), nullable=False, index=True)
    cusip = Column(String(20))
    issue_name = Column(String(255))
    issue_ticker = Column(String(50))
    trading_platform = Column(String(100))
    security_type = Column(String(255))
    total_authorized_shares = Column(BigInteger, nullable=True)
    import_key = Column(String(255), unique=True, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Split(Base):
    __tablename__ = 'splits'

    id = Column(Integer, primary_key=True, autoincrement=True)
    issuer_id = Column(Integer, ForeignKey('issuers.id', ondelete='CASCADE'), nullable=False, index=True)
    transaction_type = Column(String(100), default='DWAC Withdrawal')
    class_a_ratio = Column(Float, nullable=False)
    rights_ratio = Column(Float, nullable=False)
    import_key = Column(String(255), unique=True, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Document(Base):
    __tablename__ = 'documents'

    id = Column(Integer, primary_key=True, autoincrement=True)
    issuer_id = Column(Integer, ForeignKey('issuers.id', ondelete='CASCADE'), nullable=False, index=True)
    document_type = Column(String(100))
    document_name = Column(String(500))
    file_url = Column(String(1000))
    file_size = Column(BigInteger)
    file_type = Column(String(255))
    import_key = Column(String(255), unique=True, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class RestrictionTemplate(Base):
    __tablename__ = 'restriction_templates'

    id = Column(Integer, primary_key=True, autoincrement=True)
    issuer_id = Column(Integer, ForeignKey('issuers.id', ondelete='CASCADE'), nullable=False, index=True)
    restriction_type = Column(String(50), nullable=False)  # short code, e.g. 'A'
    description = Column(Text, nullable=False)  # legend text
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class ShareholderRestriction(Base):
    __tablename__ = 'shareholder_restrictions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    issuer_id = Column(Integer, ForeignKey('issuers.id', ondelete='CASCADE'), nullable=False, index=True)
    shareholder_id = Column(Integer, ForeignKey('shareholders.id', ondelete='CASCADE'), nullable=False)
    restriction_id = Column(Integer, ForeignKey('restriction_templates.id', ondelete='CASCADE'), nullable=False)
    cusip = Column(String(20), nullable=False)
    restricted_shares = Column(BigInteger, nullable=False)
    restriction_date = Column(Date)
    expiration_date = Column(Date, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class ImportJob(Base):
    """Resumable workbook import. ``cursor`` indexes the next save step to run."""
    __tablename__ = 'import_jobs'

    id = Column(String(36), primary_key=True)
    issuer_id = Column(Integer, ForeignKey('issuers.id', ondelete='SET NULL'), nullable=True)
    filename = Column(String(500))
    file_size = Column(BigInteger, default=0)
    status = Column(String(50), default='pending', nullable=False)
    cursor = Column(Integer, default=0, nullable=False)
    override = Column(Boolean, default=False)
    payload = Column(JSON, nullable=False)
    results = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=True)


def get_database_url():
    explicit = os.getenv('DATABASE_URL')
    if explicit:
        return explicit

    # Check if SQL Server configuration is available
    host = os.getenv('DB_SQLSRV_HOST')

    if host:  # Use SQL Server if host is configured
        port = os.getenv('DB_SQLSRV_PORT', '1433')
        database = os.getenv('DB_SQLSRV_DATABASE')
        username = os.getenv('DB_SQLSRV_USERNAME')
        password = os.getenv('DB_SQLSRV_PASSWORD')
        logger.info("Connecting to SQL Server: %s\\%s", host, database)
        return f"mssql+pyodbc://{username}:{password}@{host}:{port}/{database}?driver=ODBC+Driver+17+for+SQL+Server"

    # Fall back to SQLite for demo/development
    logger.info("No database configuration found, using SQLite")
    return "sqlite:///./registry.db"


def enable_sqlite_savepoints(bind):
    """Let SQLAlchemy emit BEGIN itself so SAVEPOINT works on pysqlite."""

    @event.listens_for(bind, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(bind, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return bind


# Create engine and session
engine = create_engine(get_database_url(), echo=False)
if engine.dialect.name == "sqlite":
    enable_sqlite_savepoints(engine)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind=None):
    Base.metadata.create_all(bind=bind or engine)


def get_session_factory():
    """Dependency returning the sessionmaker services should use."""
    return SessionLocal
