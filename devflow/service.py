"""Assemble a pipeline from configuration and collaborators."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .collaborators import ContextStore, Generator, SourceControl, TrackerClient
from .config import DevflowConfig, load_config
from .items import StatusUpdater
from .persistence import WorkflowRepository, get_repository
from .phases import PhaseServices, build_orchestrators
from .propagation import CascadeRollupPropagator
from .router import TriggerRouter
from .runtime import PipelineRuntime
from .signals import HumanSignalBroker
from .transports import BaseTransport, get_transport


@dataclass
class DevflowService:
    config: DevflowConfig
    repository: WorkflowRepository
    transport: BaseTransport
    broker: HumanSignalBroker
    runtime: PipelineRuntime
    propagator: CascadeRollupPropagator
    router: TriggerRouter


def build_service(
    tracker: TrackerClient,
    generator: Generator,
    context_store: ContextStore,
    source_control: SourceControl,
    config: Optional[DevflowConfig] = None,
    repository: Optional[WorkflowRepository] = None,
    transport: Optional[BaseTransport] = None,
) -> DevflowService:
    """Wire every component around the given collaborators.

    Repository and transport default to the configured backends.
    """
    config = config or load_config()
    repository = repository or get_repository(config=config)
    transport = transport or get_transport(config=config)
    table = config.build_status_table()

    broker = HumanSignalBroker(
        repository, transport, tracker, timeout_hours=config.questions.timeout_hours
    )
    status_updater = StatusUpdater(repository, tracker, table)
    services = PhaseServices(
        repository=repository,
        tracker=tracker,
        generator=generator,
        context_store=context_store,
        source_control=source_control,
        broker=broker,
        status_updater=status_updater,
        table=table,
        config=config,
    )
    runtime = PipelineRuntime(
        build_orchestrators(services), repository, transport, broker
    )
    propagator = CascadeRollupPropagator(repository, status_updater, table)
    router = TriggerRouter(
        repository, table, runtime, propagator, broker, status_updater, config=config
    )
    return DevflowService(
        config=config,
        repository=repository,
        transport=transport,
        broker=broker,
        runtime=runtime,
        propagator=propagator,
        router=router,
    )
