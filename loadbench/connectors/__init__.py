"""
Backend wiring: scenario store, artifact store and container service.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from loadbench.config import Settings
from loadbench.core.interfaces import ArtifactStore, ContainerService, ScenarioStore

logger = logging.getLogger(__name__)


@dataclass
class Backends:
    scenario_store: ScenarioStore
    container_service: ContainerService
    artifact_store: ArtifactStore


def build_backends(settings: Settings) -> Backends:
    backend = settings.STORAGE_BACKEND.strip().lower()

    if backend == "memory":
        from loadbench.connectors.memory import (
            InMemoryArtifactStore,
            InMemoryScenarioStore,
            SimulatedContainerService,
        )

        artifacts = InMemoryArtifactStore()
        logger.info("Using in-memory backends with simulated workers")
        return Backends(
            scenario_store=InMemoryScenarioStore(),
            container_service=SimulatedContainerService(artifact_store=artifacts),
            artifact_store=artifacts,
        )

    if backend == "aws":
        from loadbench.connectors.aws import (
            DynamoScenarioStore,
            EcsContainerService,
            S3ArtifactStore,
        )

        subnets = [s.strip() for s in settings.ECS_SUBNETS.split(",") if s.strip()]
        security_groups = [settings.ECS_SECURITY_GROUP] if settings.ECS_SECURITY_GROUP else []
        logger.info(
            "Using AWS backends: cluster=%s, tables=%s/%s, bucket=%s",
            settings.ECS_CLUSTER,
            settings.SCENARIOS_TABLE,
            settings.HISTORY_TABLE,
            settings.SCENARIOS_BUCKET,
        )
        return Backends(
            scenario_store=DynamoScenarioStore(
                scenarios_table=settings.SCENARIOS_TABLE,
                history_table=settings.HISTORY_TABLE,
                bucket=settings.SCENARIOS_BUCKET,
                region=settings.AWS_REGION,
            ),
            container_service=EcsContainerService(
                cluster=settings.ECS_CLUSTER,
                task_definition=settings.ECS_TASK_DEFINITION,
                container_name=settings.ECS_CONTAINER_NAME,
                results_bucket=settings.SCENARIOS_BUCKET,
                subnets=subnets,
                security_groups=security_groups,
                default_region=settings.AWS_REGION,
            ),
            artifact_store=S3ArtifactStore(region=settings.AWS_REGION),
        )

    raise ValueError(f"Unknown STORAGE_BACKEND: {settings.STORAGE_BACKEND!r}")
