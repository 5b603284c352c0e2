import asyncio
from collections import defaultdict

import pytest

from waypoint.config import EngineConfig
from waypoint.engine import ExecutionEngine
from waypoint.errors import ExecutorError
from waypoint.executors import Completed, StepExecutor, default_registry
from waypoint.graph import StepKind, WorkflowDefinition
from waypoint.persistence import InMemoryWorkflowRepository


class ScriptedExecutor(StepExecutor):
    """Step executor whose behaviour is read from the step config.

    ``sleep`` delays the step, ``fail`` makes every attempt raise,
    ``fail_times`` makes the first N attempts raise and ``output`` is
    returned on success.
    """

    def __init__(self, delay: float = 0.0, fail_always: bool = False) -> None:
        self.delay = delay
        self.fail_always = fail_always
        self.calls = []
        self._failures = defaultdict(int)

    async def execute(self, config, context):
        self.calls.append((context.step_id, context.visit, context.attempt))
        delay = config.get("sleep", self.delay)
        if delay:
            await asyncio.sleep(delay)
        if self.fail_always or config.get("fail"):
            raise ExecutorError(f"{context.step_id} failed")
        if self._failures[context.step_id] < config.get("fail_times", 0):
            self._failures[context.step_id] += 1
            raise ExecutorError(f"{context.step_id} failed on attempt {context.attempt}")
        return Completed(output=dict(config.get("output", {})))


@pytest.fixture
def repo():
    return InMemoryWorkflowRepository()


@pytest.fixture
def fast_config():
    return EngineConfig(
        retry_base_delay=0.01,
        retry_max_delay=0.05,
        retry_jitter=0,
        persist_retry_delay=0.01,
        sla_check_interval=0.05,
    )


@pytest.fixture
def executor_class():
    return ScriptedExecutor


@pytest.fixture
def scripted():
    return ScriptedExecutor()


@pytest.fixture
def make_engine(repo, fast_config, scripted):
    """Engine factory; ``update`` steps run on the scripted executor by default."""

    def factory(executors=None, repository=None, executor=None):
        if executors is None:
            executors = default_registry()
            executors.register(StepKind.UPDATE, executor or scripted)
        return ExecutionEngine(
            repository or repo, executors=executors, config=fast_config
        )

    return factory


@pytest.fixture
def publish(repo):
    async def _publish(data, repository=None):
        definition = WorkflowDefinition.model_validate(data)
        definition.validate_definition()
        return await (repository or repo).publish_workflow(definition)

    return _publish


@pytest.fixture
def wait_until():
    async def _wait_until(predicate, timeout=5.0, interval=0.01):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            result = predicate()
            if asyncio.iscoroutine(result):
                result = await result
            if result:
                return result
            if loop.time() > deadline:
                raise AssertionError("condition not reached in time")
            await asyncio.sleep(interval)

    return _wait_until
