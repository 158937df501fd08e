"""
AWS backends.

ECS (Fargate) runs the workers, DynamoDB holds scenarios and run history,
S3 holds scenario payloads and per-worker result artifacts. boto3 calls
run on the default executor.
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
from typing import Any, Callable
from urllib.parse import urlparse

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import BotoCoreError, ClientError

from loadbench.core.interfaces import TaskSpec, TaskState, TaskStatus
from loadbench.errors import ArtifactUnavailable, ScenarioNotFound
from loadbench.models import PerWorkerSummary, Scenario, TestRun

logger = logging.getLogger(__name__)

# ECS API limits.
RUN_TASK_MAX_COUNT = 10
DESCRIBE_TASKS_MAX = 100

_PENDING_STATUSES = {"PROVISIONING", "PENDING", "ACTIVATING"}
_STOPPED_STATUS = "STOPPED"

ClientFactory = Callable[[str, str], Any]


def _default_client_factory(service: str, region: str) -> Any:
    return boto3.client(service, region_name=region)


async def _run_in_executor(func, *args, **kwargs):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))


def region_from_arn(arn: str, default: str) -> str:
    parts = str(arn).split(":")
    if len(parts) >= 6 and parts[3]:
        return parts[3]
    return default


def task_id_from_arn(arn: str) -> str:
    return str(arn).rsplit("/", 1)[-1]


def parse_s3_location(location: str) -> tuple[str, str]:
    parsed = urlparse(location)
    if parsed.scheme != "s3" or not parsed.netloc or not parsed.path.strip("/"):
        raise ValueError(f"Not an s3:// location: {location}")
    return parsed.netloc, parsed.path.lstrip("/")


class EcsContainerService:
    """
    Launches workers as ECS tasks, one cluster per region.

    Specs that differ only in their worker index share one run_task call
    (up to ten tasks each). Handles are task ARNs; the region is read back
    from the ARN. A worker whose essential container exits 0 is expected to
    have written ``results/{test_id}/{task_id}.json`` to the results bucket.
    """

    def __init__(
        self,
        *,
        cluster: str,
        task_definition: str,
        container_name: str,
        results_bucket: str,
        subnets: list[str],
        security_groups: list[str],
        default_region: str,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self.cluster = cluster
        self.task_definition = task_definition
        self.container_name = container_name
        self.results_bucket = results_bucket
        self.subnets = list(subnets)
        self.security_groups = list(security_groups)
        self.default_region = default_region
        self._client_factory = client_factory or _default_client_factory
        self._clients: dict[str, Any] = {}

    def _client(self, region: str) -> Any:
        client = self._clients.get(region)
        if client is None:
            client = self._client_factory("ecs", region)
            self._clients[region] = client
        return client

    def _run_task_kwargs(self, test_id: str, spec: TaskSpec, count: int) -> dict[str, Any]:
        env = spec.environment()
        env.pop("WORKER_INDEX", None)
        container_override: dict[str, Any] = {
            "name": self.container_name,
            "environment": [{"name": k, "value": v} for k, v in sorted(env.items())],
        }
        kwargs: dict[str, Any] = {
            "cluster": self.cluster,
            "taskDefinition": self.task_definition,
            "launchType": "FARGATE",
            "count": count,
            "startedBy": test_id[:36],
            "overrides": {"containerOverrides": [container_override]},
        }
        if spec.cpu:
            kwargs["overrides"]["cpu"] = spec.cpu
        if spec.memory:
            kwargs["overrides"]["memory"] = spec.memory
        if self.subnets:
            kwargs["networkConfiguration"] = {
                "awsvpcConfiguration": {
                    "subnets": self.subnets,
                    "securityGroups": self.security_groups,
                    "assignPublicIp": "ENABLED",
                }
            }
        return kwargs

    @staticmethod
    def _group_key(spec: TaskSpec) -> tuple:
        env = spec.environment()
        env.pop("WORKER_INDEX", None)
        return (spec.region, spec.image, spec.cpu, spec.memory, tuple(sorted(env.items())))

    async def launch_tasks(self, test_id: str, specs: list[TaskSpec]) -> list[str | None]:
        """
        A failed run_task call only leaves its own workers unplaced: handles
        from earlier calls are still returned, so a retry never relaunches
        workers that are already running. Raises only when nothing launched.
        """
        handles: list[str | None] = [None] * len(specs)
        last_error: Exception | None = None
        groups: dict[tuple, list[int]] = {}
        for position, spec in enumerate(specs):
            groups.setdefault(self._group_key(spec), []).append(position)

        for positions in groups.values():
            for start in range(0, len(positions), RUN_TASK_MAX_COUNT):
                chunk = positions[start : start + RUN_TASK_MAX_COUNT]
                spec = specs[chunk[0]]
                client = self._client(spec.region)
                try:
                    response = await _run_in_executor(
                        client.run_task, **self._run_task_kwargs(test_id, spec, len(chunk))
                    )
                except (ClientError, BotoCoreError) as e:
                    logger.warning(
                        "ECS run_task for %s in %s failed for %d worker(s): %s",
                        test_id,
                        spec.region,
                        len(chunk),
                        e,
                    )
                    last_error = e
                    continue
                arns = [t["taskArn"] for t in response.get("tasks", []) if t.get("taskArn")]
                for failure in response.get("failures", []):
                    logger.warning(
                        "ECS could not place a worker for %s in %s: %s",
                        test_id,
                        spec.region,
                        failure.get("reason") or failure,
                    )
                for position, arn in zip(chunk, arns):
                    handles[position] = arn
        if last_error is not None and not any(handles):
            raise last_error
        return handles

    def _task_state(self, task: dict[str, Any]) -> TaskState:
        last_status = str(task.get("lastStatus") or "").upper()
        if last_status in _PENDING_STATUSES:
            return TaskState(TaskStatus.PENDING)
        if last_status != _STOPPED_STATUS:
            return TaskState(TaskStatus.RUNNING)

        exit_code = None
        for container in task.get("containers", []):
            if container.get("name") == self.container_name:
                exit_code = container.get("exitCode")
                break
        if exit_code == 0:
            test_id = str(task.get("startedBy") or "")
            key = f"results/{test_id}/{task_id_from_arn(task['taskArn'])}.json"
            return TaskState(
                TaskStatus.STOPPED_SUCCESS,
                artifact_location=f"s3://{self.results_bucket}/{key}",
            )
        return TaskState(
            TaskStatus.STOPPED_FAILURE,
            detail=str(task.get("stoppedReason") or f"exit code {exit_code}"),
        )

    async def describe_tasks(self, handles: list[str]) -> dict[str, TaskState]:
        by_region: dict[str, list[str]] = {}
        for handle in handles:
            by_region.setdefault(region_from_arn(handle, self.default_region), []).append(handle)

        states: dict[str, TaskState] = {}
        for region, arns in by_region.items():
            client = self._client(region)
            for start in range(0, len(arns), DESCRIBE_TASKS_MAX):
                response = await _run_in_executor(
                    client.describe_tasks,
                    cluster=self.cluster,
                    tasks=arns[start : start + DESCRIBE_TASKS_MAX],
                )
                for task in response.get("tasks", []):
                    states[task["taskArn"]] = self._task_state(task)
                for failure in response.get("failures", []):
                    arn = failure.get("arn")
                    if arn and str(failure.get("reason") or "").upper() == "MISSING":
                        states[arn] = TaskState(TaskStatus.STOPPED_FAILURE, detail="Task missing")
        return states

    async def stop_task(self, handle: str) -> None:
        client = self._client(region_from_arn(handle, self.default_region))
        await _run_in_executor(
            client.stop_task,
            cluster=self.cluster,
            task=handle,
            reason="Stopped by loadbench",
        )


class DynamoScenarioStore:
    """
    Scenarios and run history in DynamoDB; scenario payloads in S3.

    Both tables hold the full model as a JSON ``payload`` attribute next to
    a few top-level attributes used for lookups.
    """

    def __init__(
        self,
        *,
        scenarios_table: str,
        history_table: str,
        bucket: str,
        region: str,
        resource: Any = None,
        s3_client: Any = None,
    ) -> None:
        self.bucket = bucket
        dynamodb = resource or boto3.resource("dynamodb", region_name=region)
        self._scenarios = dynamodb.Table(scenarios_table)
        self._history = dynamodb.Table(history_table)
        self._s3 = s3_client or boto3.client("s3", region_name=region)

    async def get_scenario(self, scenario_id: str) -> Scenario:
        response = await _run_in_executor(
            self._scenarios.get_item, Key={"scenario_id": scenario_id}
        )
        item = response.get("Item")
        if not item:
            raise ScenarioNotFound(scenario_id)
        return Scenario.model_validate_json(item["payload"])

    async def put_scenario(self, scenario: Scenario) -> None:
        payload = scenario.model_dump_json()
        _, key = parse_s3_location(self.scenario_location(scenario.scenario_id))
        await _run_in_executor(
            self._s3.put_object,
            Bucket=self.bucket,
            Key=key,
            Body=payload.encode("utf-8"),
            ContentType="application/json",
        )
        await _run_in_executor(
            self._scenarios.put_item,
            Item={
                "scenario_id": scenario.scenario_id,
                "name": scenario.name,
                "payload": payload,
            },
        )

    def scenario_location(self, scenario_id: str) -> str:
        return f"s3://{self.bucket}/scenarios/{scenario_id}.json"

    async def put_run_record(self, run: TestRun) -> None:
        await _run_in_executor(
            self._history.put_item,
            Item={
                "test_id": run.test_id,
                "scenario_id": run.scenario_id,
                "status": run.status.value,
                "start_time": run.start_time.isoformat(),
                "payload": run.model_dump_json(),
            },
        )

    async def get_run_record(self, test_id: str) -> TestRun | None:
        response = await _run_in_executor(self._history.get_item, Key={"test_id": test_id})
        item = response.get("Item")
        if not item:
            return None
        return TestRun.model_validate_json(item["payload"])

    async def list_runs(self, scenario_id: str) -> list[TestRun]:
        runs: list[TestRun] = []
        kwargs: dict[str, Any] = {"FilterExpression": Attr("scenario_id").eq(scenario_id)}
        while True:
            response = await _run_in_executor(self._history.scan, **kwargs)
            runs.extend(TestRun.model_validate_json(i["payload"]) for i in response.get("Items", []))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                return runs
            kwargs["ExclusiveStartKey"] = last_key


class S3ArtifactStore:
    def __init__(self, *, region: str, s3_client: Any = None) -> None:
        self._s3 = s3_client or boto3.client("s3", region_name=region)

    async def get_artifact(self, location: str) -> PerWorkerSummary:
        bucket, key = parse_s3_location(location)
        try:
            response = await _run_in_executor(self._s3.get_object, Bucket=bucket, Key=key)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            raise ArtifactUnavailable(f"{location}: {code or e}") from e
        body = await _run_in_executor(response["Body"].read)
        return PerWorkerSummary.model_validate(json.loads(body))
