"""
Workflow step definitions.

A step is one of two variants:

- ``NativeStep``: runs an in-process ``execute(context)`` callable
- ``CommandStep``: delegates to an external command

``build_step`` turns a plain mapping into the right variant when a step is
registered. Steps run in declaration order; ``dependencies`` only name steps
that must have completed earlier in the same run.
"""

from __future__ import annotations

import inspect
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, ClassVar, Dict, List, Optional, Sequence, Union

import networkx as nx
from pydantic import BaseModel, ConfigDict, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from ...utils.commands import run_command_async
from ..errors import ValidationError
from ..parallel import ParallelTask, TaskResult, run_tasks_in_parallel

if TYPE_CHECKING:
    from ...cache import WorkflowCache
    from ...config import Config
    from ..state_store import WorkflowStateStore


@dataclass(frozen=True)
class CacheSpec:
    """Opt-in result caching for a step.

    Attributes:
        cache_type: Key namespace; defaults to the step name when empty
        inputs: Files whose modification time and size form the fingerprint
    """

    cache_type: str = ""
    inputs: tuple = ()


@dataclass
class StepContext:
    """What a step sees while it runs."""

    state: "WorkflowStateStore"
    options: Dict[str, Any] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)
    config: Optional["Config"] = None
    cache: Optional["WorkflowCache"] = None

    async def run_parallel(self, tasks: Sequence[ParallelTask], **kwargs: Any) -> List[TaskResult]:
        """Run sub-tasks concurrently using the configured limits as defaults."""
        if self.config is not None:
            kwargs.setdefault("max_concurrent", self.config.max_concurrent)
            kwargs.setdefault("timeout", self.config.parallel_timeout)
            kwargs.setdefault("task_timeout", self.config.task_timeout)
        return await run_tasks_in_parallel(tasks, **kwargs)


@dataclass
class StepDefinition:
    """Fields shared by every step variant."""

    name: str
    description: str = ""
    critical: bool = True
    dependencies: List[str] = field(default_factory=list)
    timeout: Optional[float] = None
    cache: Optional[CacheSpec] = None

    kind: ClassVar[str] = "step"
    # True when run() enforces ``timeout`` itself
    handles_timeout: ClassVar[bool] = False

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise ValidationError("Step definition requires a non-empty name")
        if isinstance(self.dependencies, str):
            self.dependencies = [self.dependencies]
        self.dependencies = list(self.dependencies or [])
        if not all(isinstance(dep, str) for dep in self.dependencies):
            raise ValidationError(f"Dependencies of step {self.name} must be step names", step=self.name)
        if self.timeout is not None and self.timeout <= 0:
            raise ValidationError(f"Timeout of step {self.name} must be positive", step=self.name)
        if isinstance(self.cache, Mapping):
            self.cache = CacheSpec(
                cache_type=self.cache.get("cache_type", ""),
                inputs=tuple(self.cache.get("inputs", ())),
            )

    async def run(self, context: StepContext) -> Any:
        raise NotImplementedError


@dataclass
class NativeStep(StepDefinition):
    """Step implemented by an in-process callable."""

    execute: Optional[Callable[[StepContext], Any]] = None

    kind: ClassVar[str] = "native"

    def __post_init__(self) -> None:
        super().__post_init__()
        if not callable(self.execute):
            raise ValidationError(f"Step {self.name} has no executable body", step=self.name)

    async def run(self, context: StepContext) -> Any:
        value = self.execute(context)
        if inspect.isawaitable(value):
            value = await value
        return value


@dataclass
class CommandStep(StepDefinition):
    """Step delegated to an external command."""

    command: Union[str, Sequence[str], None] = None
    cwd: Optional[str] = None
    env: Optional[Dict[str, str]] = None

    kind: ClassVar[str] = "command"
    handles_timeout: ClassVar[bool] = True

    def __post_init__(self) -> None:
        super().__post_init__()
        if not self.command:
            raise ValidationError(f"Step {self.name} has no command", step=self.name)

    async def run(self, context: StepContext) -> Dict[str, Any]:
        result = await run_command_async(self.command, cwd=self.cwd, env=self.env, timeout=self.timeout)
        return {
            "success": result.success,
            "output": result.output,
            "error": result.error,
            "code": result.code,
            "timed_out": result.timed_out,
        }


_COMMON_FIELDS = ("name", "description", "critical", "dependencies", "timeout", "cache")


def build_step(definition: Union[StepDefinition, Mapping[str, Any]]) -> StepDefinition:
    """Resolve a step definition into its variant.

    A mapping with a callable ``execute`` becomes a ``NativeStep``; one with a
    ``command`` becomes a ``CommandStep``.

    Raises:
        ValidationError: If the definition matches neither variant
    """
    if isinstance(definition, StepDefinition):
        return definition
    if not isinstance(definition, Mapping):
        raise ValidationError(
            f"Step definition must be a mapping or StepDefinition, got {type(definition).__name__}"
        )

    common = {key: definition[key] for key in _COMMON_FIELDS if key in definition}
    if "name" not in common:
        raise ValidationError("Step definition requires a non-empty name")

    if callable(definition.get("execute")):
        return NativeStep(execute=definition["execute"], **common)
    if definition.get("command"):
        return CommandStep(
            command=definition["command"],
            cwd=definition.get("cwd"),
            env=definition.get("env"),
            **common,
        )
    raise ValidationError(f"Step {common['name']} has no executable body", step=str(common["name"]))


def dependency_graph(steps: Sequence[StepDefinition]) -> nx.DiGraph:
    """Directed graph with an edge from each dependency to its dependent."""
    graph = nx.DiGraph()
    for position, step in enumerate(steps):
        graph.add_node(step.name, position=position)
    for step in steps:
        for dep in step.dependencies:
            graph.add_edge(dep, step.name)
    return graph


def find_definition_problems(steps: Sequence[StepDefinition]) -> List[str]:
    """Describe dependency problems that would make steps unreachable."""
    problems: List[str] = []
    positions = {}
    for position, step in enumerate(steps):
        positions.setdefault(step.name, position)

    for position, step in enumerate(steps):
        for dep in step.dependencies:
            if dep not in positions:
                problems.append(f"Step {step.name} depends on unknown step {dep}")
            elif positions[dep] >= position:
                problems.append(f"Step {step.name} depends on {dep}, which runs later")

    graph = dependency_graph(steps)
    if not nx.is_directed_acyclic_graph(graph):
        cycle = nx.find_cycle(graph)
        problems.append("Dependency cycle: " + " -> ".join(edge[0] for edge in cycle))
    return problems


class WorkflowDefinition(BaseModel):
    """Strictly validated step list."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str = "workflow"
    steps: List[Any]

    @field_validator("steps", mode="before")
    @classmethod
    def resolve_steps(cls, v):
        """Resolve mappings into step variants."""
        if not v:
            raise ValueError("Workflow must have at least one step")
        try:
            return [build_step(step) for step in v]
        except ValidationError as e:
            raise ValueError(e.message) from e

    @field_validator("steps")
    @classmethod
    def validate_unique_names(cls, v):
        seen = set()
        for step in v:
            if step.name in seen:
                raise ValueError(f"Duplicate step name: {step.name}")
            seen.add(step.name)
        return v

    @model_validator(mode="after")
    def validate_dependencies(self):
        problems = find_definition_problems(self.steps)
        if problems:
            raise ValueError("; ".join(problems))
        return self

    @classmethod
    def from_steps(
        cls, steps: Sequence[Union[StepDefinition, Mapping[str, Any]]], name: str = "workflow"
    ) -> "WorkflowDefinition":
        """Validate ``steps``, raising the workflow ``ValidationError`` on failure."""
        try:
            return cls(name=name, steps=list(steps))
        except PydanticValidationError as e:
            messages = "; ".join(str(err.get("msg", "")) for err in e.errors())
            raise ValidationError(f"Invalid workflow {name}: {messages}") from e

    def to_dag(self) -> nx.DiGraph:
        return dependency_graph(self.steps)
