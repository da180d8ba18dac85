"""Dependency injection container for the application."""

from dependency_injector import containers, providers

from core.config import Settings
from core.database import Database
from services.credits import CreditLedger
from services.node_executor import NodeExecutor
from services.orchestrator import ExecutionOrchestrator
from services.plugins import NullPluginManager, PluginManager
from services.poller import ExternalTaskPoller
from services.pricing import PricingService
from services.providers import ProviderRegistry
from services.queue import TaskQueue
from services.recovery import RecoverySweeper
from services.storage import ArtifactStorage, CdnStorageHandler
from services.worker import Worker
from services.workflow_graph import GraphResolver


def create_plugin_manager(settings: Settings):
    """Plugin manager for the configured plugins directory, or a null one."""
    if not settings.plugins_dir:
        return NullPluginManager()
    manager = PluginManager(settings)
    manager.load()
    return manager


def create_storage(settings: Settings) -> ArtifactStorage:
    """Artifact storage with the CDN storage handler as its first tier."""
    return ArtifactStorage(settings, handler=CdnStorageHandler(settings))


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    database = providers.Singleton(
        Database,
        settings=settings
    )

    # Queue and ledgers
    queue = providers.Singleton(
        TaskQueue,
        database=database,
        settings=settings
    )

    credits = providers.Singleton(
        CreditLedger,
        database=database
    )

    pricing = providers.Singleton(
        PricingService,
        database=database
    )

    # Node dispatch
    plugins = providers.Singleton(
        create_plugin_manager,
        settings=settings
    )

    node_executor = providers.Singleton(
        NodeExecutor,
        settings=settings,
        plugins=plugins
    )

    resolver = providers.Singleton(
        GraphResolver,
        database=database
    )

    storage = providers.Singleton(
        create_storage,
        settings=settings
    )

    providers_registry = providers.Singleton(
        ProviderRegistry,
        settings=settings
    )

    # Execution
    orchestrator = providers.Singleton(
        ExecutionOrchestrator,
        database=database,
        settings=settings,
        queue=queue,
        credits=credits,
        pricing=pricing,
        executor=node_executor,
        resolver=resolver,
        storage=storage
    )

    poller = providers.Singleton(
        ExternalTaskPoller,
        database=database,
        settings=settings,
        queue=queue,
        providers=providers_registry,
        storage=storage,
        orchestrator=orchestrator
    )

    worker = providers.Factory(
        Worker,
        settings=settings,
        queue=queue,
        orchestrator=orchestrator,
        poller=poller
    )

    recovery_sweeper = providers.Singleton(
        RecoverySweeper,
        database=database,
        settings=settings,
        queue=queue,
        orchestrator=orchestrator
    )


# Global container instance
container = Container()
