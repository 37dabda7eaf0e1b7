# DI container wiring the settlement core, background services and API collaborators
from dependency_injector import containers, providers
from prometheus_client import CollectorRegistry

from core.config.settings import Settings
from core.database.connection import DatabaseManager
from core.monitoring.prometheus_metrics import SettlementMetricsCollector
from core.trading.repository import ProductRepository, TradeRepository
from services.custodian.factory import create_custodian_gateway
from services.ledger.repository import ShareLedger
from services.monitoring.monitor import StuckTransferMonitor
from services.monitoring.service import TransferMonitorService
from services.portfolio.repository import PortfolioStore
from services.reconciliation.engine import ReconciliationEngine
from services.reconciliation.service import ReconciliationService
from services.transfers.orchestrator import TransferOrchestrator
from services.transfers.reporting import TransferReporting
from services.transfers.repository import TransferRepository, WorkflowRepository
from services.transfers.service import SettlementService
from services.transfers.state_machine import TransferStateMachine


class AppContainer(containers.DeclarativeContainer):
    """Application dependency injection container"""

    # Configuration
    settings = providers.Singleton(Settings)

    # --- Observability: Prometheus ---
    # Shared registry used by the API /metrics endpoint and the collector
    prometheus_registry = providers.Singleton(CollectorRegistry)
    prometheus_metrics = providers.Singleton(
        SettlementMetricsCollector,
        registry=prometheus_registry,
    )

    # Database with environment awareness
    db_manager = providers.Singleton(
        DatabaseManager,
        db_url=settings.provided.database.url,
        environment=settings.provided.environment,
        schema_management=settings.provided.database.schema_management,
        pool_size=settings.provided.database.pool_size,
        max_overflow=settings.provided.database.max_overflow,
        pool_recycle=settings.provided.database.pool_recycle_seconds,
    )

    # Stores (stateless, share the caller's session)
    trade_repository = providers.Singleton(TradeRepository)
    product_repository = providers.Singleton(ProductRepository)
    share_ledger = providers.Singleton(ShareLedger)
    portfolio_store = providers.Singleton(PortfolioStore)
    transfer_repository = providers.Singleton(TransferRepository)
    workflow_repository = providers.Singleton(WorkflowRepository)

    # External custodian
    custodian_gateway = providers.Singleton(
        create_custodian_gateway,
        settings=settings,
        metrics=prometheus_metrics,
    )

    # Settlement core
    state_machine = providers.Singleton(
        TransferStateMachine,
        db_manager=db_manager,
        transfers=transfer_repository,
        trades=trade_repository,
        ledger=share_ledger,
        portfolios=portfolio_store,
        gateway=custodian_gateway,
        metrics=prometheus_metrics,
    )

    transfer_orchestrator = providers.Singleton(
        TransferOrchestrator,
        settings=settings,
        db_manager=db_manager,
        state_machine=state_machine,
        transfers=transfer_repository,
        workflows=workflow_repository,
        trades=trade_repository,
        products=product_repository,
        ledger=share_ledger,
        portfolios=portfolio_store,
        gateway=custodian_gateway,
        metrics=prometheus_metrics,
    )

    transfer_reporting = providers.Singleton(
        TransferReporting,
        db_manager=db_manager,
        transfers=transfer_repository,
        workflows=workflow_repository,
        trades=trade_repository,
        ledger=share_ledger,
    )

    reconciliation_engine = providers.Singleton(
        ReconciliationEngine,
        settings=settings,
        db_manager=db_manager,
        ledger=share_ledger,
        portfolios=portfolio_store,
        products=product_repository,
        gateway=custodian_gateway,
        metrics=prometheus_metrics,
    )

    stuck_transfer_monitor = providers.Singleton(
        StuckTransferMonitor,
        settings=settings,
        db_manager=db_manager,
        state_machine=state_machine,
        transfers=transfer_repository,
        trades=trade_repository,
        gateway=custodian_gateway,
        metrics=prometheus_metrics,
    )

    # Long-running services
    settlement_service = providers.Singleton(
        SettlementService,
        settings=settings,
        db_manager=db_manager,
        orchestrator=transfer_orchestrator,
        trades=trade_repository,
        metrics=prometheus_metrics,
    )

    transfer_monitor_service = providers.Singleton(
        TransferMonitorService,
        settings=settings,
        monitor=stuck_transfer_monitor,
    )

    reconciliation_service = providers.Singleton(
        ReconciliationService,
        settings=settings,
        engine=reconciliation_engine,
    )

    lifespan_services = providers.List(
        settlement_service,
        transfer_monitor_service,
        reconciliation_service,
    )
