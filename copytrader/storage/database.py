"""Session ledger: durable storage for copy sessions and trade outcomes."""
from typing import List, Optional
from datetime import datetime, timezone
from decimal import Decimal
from sqlalchemy import (
    Boolean, Column, String, DateTime, Numeric, Integer, ForeignKey, Index,
    select, update
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.ext.asyncio import AsyncEngine
import structlog

from copytrader.core.models import (
    CopytradeConfig, TradeOutcome, TradeSide, TradeStatus, SessionPosition,
    derive_session_position, utc_now
)
from copytrader.core.config import database_config
from copytrader.core.exceptions import DuplicateTradeError, LedgerError

logger = structlog.get_logger(__name__)

Base = declarative_base()

# SQLite keeps Numeric columns as REAL; round reads back to this precision
_DECIMAL_QUANTUM = Decimal("1e-9")


class CopytradeConfigModel(Base):
    """SQLAlchemy model for copy session configurations."""
    __tablename__ = 'copytrade_configs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    trader_address = Column(String, nullable=False)
    budget = Column(Numeric(36, 18), nullable=False)
    remaining_budget = Column(Numeric(36, 18), nullable=False)
    copy_ratio = Column(Numeric(36, 18), nullable=False)
    max_trade_size = Column(Numeric(36, 18), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    reinvest = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utc_now)


class ExecutedTradeModel(Base):
    """SQLAlchemy model for trade outcomes, one row per observed trade."""
    __tablename__ = 'executed_trades'
    __table_args__ = (
        Index('ix_executed_trades_config_asset', 'config_id', 'asset_id'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    config_id = Column(Integer, ForeignKey('copytrade_configs.id'), nullable=False)
    original_trade_id = Column(String, nullable=False, unique=True)
    trader_address = Column(String, nullable=False)
    market = Column(String, nullable=True)
    outcome = Column(String, nullable=True)
    asset_id = Column(String, nullable=False)
    side = Column(String, nullable=False)
    original_size = Column(Numeric(36, 18), nullable=False)
    executed_size = Column(Numeric(36, 18), nullable=False, default=0)
    notional = Column(Numeric(36, 18), nullable=False, default=0)
    price = Column(Numeric(36, 18), nullable=False)
    status = Column(String, nullable=False)
    order_id = Column(String, nullable=True)
    error_message = Column(String, nullable=True)
    created_at = Column(DateTime, default=utc_now)


class Database:
    """Async database interface for the session ledger."""

    def __init__(self, database_url: Optional[str] = None, echo: Optional[bool] = None):
        # Convert SQLite URL to async version if needed
        db_url = database_url or database_config.database_url
        if db_url.startswith('sqlite:///') and not db_url.startswith('sqlite+aiosqlite:///'):
            db_url = db_url.replace('sqlite:///', 'sqlite+aiosqlite:///')

        self.database_url = db_url
        self.engine: AsyncEngine = create_async_engine(
            db_url, echo=database_config.echo if echo is None else echo
        )
        self.session_maker = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def initialize(self):
        """Create tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database.initialized", url=self.database_url)

    async def close(self):
        """Close database connection."""
        await self.engine.dispose()

    # Config operations
    async def save_config(self, config: CopytradeConfig) -> CopytradeConfig:
        """Persist a new copy session and return it with its ledger id."""
        async with self.session_maker() as session:
            db_config = CopytradeConfigModel(
                trader_address=config.trader_address,
                budget=config.budget,
                remaining_budget=config.remaining_budget,
                copy_ratio=config.copy_ratio,
                max_trade_size=config.max_trade_size,
                is_active=config.is_active,
                reinvest=config.reinvest,
                created_at=config.created_at,
            )
            session.add(db_config)
            await session.commit()

            logger.info(
                "database.config_saved",
                config_id=db_config.id,
                trader=config.trader_address,
                budget=str(config.budget)
            )
            return self._config_from_model(db_config)

    async def get_config(self, config_id: int) -> Optional[CopytradeConfig]:
        """Get a copy session by ID."""
        async with self.session_maker() as session:
            db_config = await session.get(CopytradeConfigModel, config_id)

            if db_config is None:
                return None

            return self._config_from_model(db_config)

    async def get_active_configs(self) -> List[CopytradeConfig]:
        """Get all copy sessions that have not been deactivated."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(CopytradeConfigModel)
                .where(CopytradeConfigModel.is_active.is_(True))
                .order_by(CopytradeConfigModel.id)
            )
            return [self._config_from_model(c) for c in result.scalars().all()]

    async def update_budget(self, config_id: int, remaining_budget: Decimal):
        """Overwrite the remaining budget of a copy session."""
        async with self.session_maker() as session:
            result = await session.execute(
                update(CopytradeConfigModel)
                .where(CopytradeConfigModel.id == config_id)
                .values(remaining_budget=remaining_budget)
            )
            await session.commit()

            if result.rowcount == 0:
                raise LedgerError(f"Config {config_id} not found")

    async def deactivate_config(self, config_id: int):
        """Mark a copy session inactive."""
        async with self.session_maker() as session:
            await session.execute(
                update(CopytradeConfigModel)
                .where(CopytradeConfigModel.id == config_id)
                .values(is_active=False)
            )
            await session.commit()

        logger.info("database.config_deactivated", config_id=config_id)

    # Trade outcome operations
    async def is_trade_processed(self, original_trade_id: str) -> bool:
        """True if an outcome for this external trade id is already recorded."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(ExecutedTradeModel.id)
                .where(ExecutedTradeModel.original_trade_id == original_trade_id)
            )
            return result.first() is not None

    async def save_trade(self, outcome: TradeOutcome) -> TradeOutcome:
        """Append a trade outcome.

        Raises:
            DuplicateTradeError: An outcome for the same external id exists
        """
        async with self.session_maker() as session:
            db_trade = ExecutedTradeModel(
                config_id=outcome.config_id,
                original_trade_id=outcome.original_trade_id,
                trader_address=outcome.trader_address,
                market=outcome.market,
                outcome=outcome.outcome,
                asset_id=outcome.asset_id,
                side=outcome.side.value,
                original_size=outcome.original_size,
                executed_size=outcome.executed_size,
                notional=outcome.notional,
                price=outcome.price,
                status=outcome.status.value,
                order_id=outcome.order_id,
                error_message=outcome.error_message,
                created_at=outcome.created_at,
            )
            session.add(db_trade)

            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                if "UNIQUE" in str(e.orig).upper():
                    raise DuplicateTradeError(outcome.original_trade_id) from e
                raise LedgerError(str(e.orig)) from e

            return self._trade_from_model(db_trade)

    async def get_trades_by_config(
        self,
        config_id: int,
        limit: Optional[int] = None,
        status: Optional[TradeStatus] = None
    ) -> List[TradeOutcome]:
        """Get outcomes of a copy session in insertion order."""
        async with self.session_maker() as session:
            query = (
                select(ExecutedTradeModel)
                .where(ExecutedTradeModel.config_id == config_id)
                .order_by(ExecutedTradeModel.id)
            )

            if status:
                query = query.where(ExecutedTradeModel.status == TradeStatus(status).value)
            if limit:
                query = query.limit(limit)

            result = await session.execute(query)
            return [self._trade_from_model(t) for t in result.scalars().all()]

    async def get_recent_trades(self, limit: int = 20) -> List[TradeOutcome]:
        """Get the most recent outcomes across all sessions, newest first."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(ExecutedTradeModel)
                .order_by(ExecutedTradeModel.id.desc())
                .limit(limit)
            )
            return [self._trade_from_model(t) for t in result.scalars().all()]

    async def get_session_position(self, config_id: int, asset_id: str) -> SessionPosition:
        """Derive the in-session position for an asset from SUCCESS outcomes."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(ExecutedTradeModel)
                .where(ExecutedTradeModel.config_id == config_id)
                .where(ExecutedTradeModel.asset_id == asset_id)
                .where(ExecutedTradeModel.status == TradeStatus.SUCCESS.value)
                .order_by(ExecutedTradeModel.id)
            )
            records = [self._trade_from_model(t) for t in result.scalars().all()]

        return derive_session_position(config_id, asset_id, records)

    # Helpers
    @staticmethod
    def _decimal(value) -> Decimal:
        if value is None:
            return Decimal("0")
        return Decimal(value).quantize(_DECIMAL_QUANTUM)

    @staticmethod
    def _utc(value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def _config_from_model(self, model: CopytradeConfigModel) -> CopytradeConfig:
        """Convert DB model to CopytradeConfig object."""
        return CopytradeConfig(
            id=model.id,
            trader_address=model.trader_address,
            budget=self._decimal(model.budget),
            remaining_budget=self._decimal(model.remaining_budget),
            copy_ratio=self._decimal(model.copy_ratio),
            max_trade_size=self._decimal(model.max_trade_size),
            is_active=model.is_active,
            reinvest=model.reinvest,
            created_at=self._utc(model.created_at),
        )

    def _trade_from_model(self, model: ExecutedTradeModel) -> TradeOutcome:
        """Convert DB model to TradeOutcome object."""
        return TradeOutcome(
            id=model.id,
            config_id=model.config_id,
            original_trade_id=model.original_trade_id,
            trader_address=model.trader_address,
            market=model.market or "",
            outcome=model.outcome or "",
            asset_id=model.asset_id,
            side=TradeSide(model.side),
            original_size=self._decimal(model.original_size),
            executed_size=self._decimal(model.executed_size),
            notional=self._decimal(model.notional),
            price=self._decimal(model.price),
            status=TradeStatus(model.status),
            order_id=model.order_id,
            error_message=model.error_message,
            created_at=self._utc(model.created_at),
        )
