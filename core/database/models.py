# Database models for settlement state
from sqlalchemy import (
    Column, Integer, String, Numeric, JSON, DateTime, Text, UniqueConstraint, ForeignKey, Index,
)
from sqlalchemy.dialects.postgresql import JSONB

from core.utils.time_utils import utc_now
from .connection import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class ProductRecord(Base):
    """Tradable security issued on the platform"""
    __tablename__ = "products"

    product_id = Column(String(64), primary_key=True)
    symbol = Column(String(32), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    status = Column(String(16), nullable=False, default="active")  # active, suspended, delisted
    total_shares = Column(Integer, nullable=False, default=0)
    price_per_share = Column(Numeric(18, 4), nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)


class TradeRecord(Base):
    """Executed trade handed over by the trading layer"""
    __tablename__ = "trades"

    trade_id = Column(String(64), primary_key=True)
    buyer_id = Column(String(64), nullable=False, index=True)
    seller_id = Column(String(64), nullable=False, index=True)
    product_id = Column(String(64), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    price_per_share = Column(Numeric(18, 4), nullable=False)
    status = Column(String(16), nullable=False, default="pending")  # pending, settled, failed
    custodial_transfer_id = Column(String(64), nullable=True)
    failure_reason = Column(String(500), nullable=True)
    executed_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    settled_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index('idx_trades_status', 'status'),
    )


class LedgerEntryRecord(Base):
    """Share register entry: how many shares of a product a holder owns"""
    __tablename__ = "ledger_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String(64), nullable=False)
    product_id = Column(String(64), nullable=False)
    quantity = Column(Integer, nullable=False, default=0)
    status = Column(String(16), nullable=False, default="active")  # active, transferred
    acquisition_price = Column(Numeric(18, 4), nullable=False, default=0)
    acquired_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index('idx_ledger_owner_product_status', 'owner_id', 'product_id', 'status'),
        Index('idx_ledger_product_status', 'product_id', 'status'),
    )


class LedgerTransferHistoryRecord(Base):
    """Ordered transfer history attached to a ledger entry"""
    __tablename__ = "ledger_transfer_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entry_id = Column(Integer, ForeignKey("ledger_entries.id"), nullable=False, index=True)
    transfer_id = Column(String(64), nullable=False, index=True)
    from_id = Column(String(64), nullable=False)
    to_id = Column(String(64), nullable=False)
    quantity = Column(Integer, nullable=False)
    timestamp = Column(DateTime(timezone=True), default=utc_now, nullable=False)


class PortfolioRecord(Base):
    """Per-user portfolio header"""
    __tablename__ = "portfolios"

    user_id = Column(String(64), primary_key=True)
    total_realized_pnl = Column(Numeric(18, 4), nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class PortfolioHoldingRecord(Base):
    """Cached per-product holding mirrored from the ledger"""
    __tablename__ = "portfolio_holdings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), ForeignKey("portfolios.user_id"), nullable=False)
    product_id = Column(String(64), nullable=False)
    quantity = Column(Integer, nullable=False, default=0)
    average_cost = Column(Numeric(18, 4), nullable=False, default=0)
    cost_basis = Column(Numeric(18, 4), nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint('user_id', 'product_id', name='uq_portfolio_holding_user_product'),
    )


class CustodialTransferRecord(Base):
    """One custodial transfer per trade"""
    __tablename__ = "custodial_transfers"

    transfer_id = Column(String(64), primary_key=True)
    trade_id = Column(String(64), nullable=False, index=True)
    # Equals trade_id while the transfer is open, NULL once terminal
    active_trade_id = Column(String(64), nullable=True, unique=True)
    from_user_id = Column(String(64), nullable=False, index=True)
    to_user_id = Column(String(64), nullable=False, index=True)
    product_id = Column(String(64), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    transfer_type = Column(String(16), nullable=False, default="buy")  # buy, sell, transfer
    status = Column(String(16), nullable=False, default="pending")
    custodian_reference = Column(String(128), nullable=True, index=True)
    transfer_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    failure_reason = Column(String(500), nullable=True)
    submitted_at = Column(DateTime(timezone=True), nullable=True)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    settled_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index('idx_custodial_transfers_status', 'status'),
        Index('idx_custodial_transfers_status_created', 'status', 'created_at'),
    )


class TransferWorkflowRecord(Base):
    """Persisted orchestrator run for one trade"""
    __tablename__ = "transfer_workflows"

    workflow_id = Column(String(64), primary_key=True)
    trade_id = Column(String(64), nullable=False, index=True)
    transfer_id = Column(String(64), nullable=True, index=True)
    status = Column(String(16), nullable=False, default="running")  # running, completed, failed
    current_step = Column(String(64), nullable=True)
    error = Column(Text, nullable=True)
    error_code = Column(String(64), nullable=True)
    started_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)


class TransferWorkflowStepRecord(Base):
    """Step-level outcome of a workflow, kept for audit and resumption"""
    __tablename__ = "transfer_workflow_steps"

    id = Column(Integer, primary_key=True, autoincrement=True)
    workflow_id = Column(String(64), ForeignKey("transfer_workflows.workflow_id"), nullable=False)
    position = Column(Integer, nullable=False)
    name = Column(String(64), nullable=False)
    status = Column(String(16), nullable=False, default="pending")  # pending, completed, failed
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    error = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint('workflow_id', 'name', name='uq_workflow_step_name'),
        Index('idx_workflow_steps_workflow_position', 'workflow_id', 'position'),
    )
