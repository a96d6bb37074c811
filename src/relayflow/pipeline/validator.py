"""Definition compiler and validator.

Statically checks a :class:`PipelineDefinition` and compiles it into a
:class:`CompiledGraph`: a topologically ordered arena of steps indexed
by key with incoming/outgoing adjacency lists. Cycles are detected here
with a DFS recursion stack, never at runtime.
"""

from __future__ import annotations

import enum
from collections import deque
from dataclasses import dataclass, field

from apscheduler.triggers.cron import CronTrigger

from relayflow.errors import CompilationError
from relayflow.pipeline.conditions import validate_condition_syntax
from relayflow.pipeline.models import (
    CONTROL_STEP_TYPES,
    CheckpointStrategy,
    Edge,
    FileTrigger,
    MessageTrigger,
    PipelineDefinition,
    ScheduleTrigger,
    Step,
    StepType,
    WebhookTrigger,
)
from relayflow.runtime.adapters import AdapterRegistry, check_config

ELSE_LABEL = "else"

_GATE_APPROVAL_TYPES = ("MANUAL", "THRESHOLD", "TIMEOUT")
_WEBHOOK_AUTH_TYPES = ("none", "api-key", "hmac", "hmac-sha256", "basic")


class ValidationLevel(str, enum.Enum):
    QUICK = "quick"
    FULL = "full"


@dataclass
class ValidationIssue:
    """A single validation finding.

    Attributes:
        message: Human-readable description.
        reason: Stable rule code (``duplicate_key``, ``cycle``...).
        step_key: The step the issue concerns, if any.
        field: The config field or setting the issue concerns, if any.
    """

    message: str
    reason: str
    step_key: str | None = None
    field: str | None = None

    def __str__(self) -> str:
        location = f" (step '{self.step_key}')" if self.step_key else ""
        field_tag = f" field '{self.field}'" if self.field else ""
        return f"[{self.reason}]{location}{field_tag} {self.message}"

    def to_dict(self) -> dict[str, str | None]:
        return {
            "message": self.message,
            "reason": self.reason,
            "stepKey": self.step_key,
            "field": self.field,
        }


@dataclass
class CompiledGraph:
    """A validated, topologically sorted step DAG.

    Attributes:
        definition: The definition this graph was compiled from.
        order: Step keys in topological order.
        steps: Step arena indexed by key.
        outgoing: Outgoing edges per step key, in declaration order.
        incoming: Incoming edges per step key, in declaration order.
    """

    definition: PipelineDefinition
    order: list[str] = field(default_factory=list)
    steps: dict[str, Step] = field(default_factory=dict)
    outgoing: dict[str, list[Edge]] = field(default_factory=dict)
    incoming: dict[str, list[Edge]] = field(default_factory=dict)

    @property
    def sources(self) -> list[str]:
        """Steps with no predecessors, in topological order."""
        return [k for k in self.order if not self.incoming.get(k)]

    def predecessors(self, key: str) -> list[str]:
        return list(dict.fromkeys(e.source for e in self.incoming.get(key, [])))

    def successors(self, key: str) -> list[str]:
        return list(dict.fromkeys(e.target for e in self.outgoing.get(key, [])))

    def descendants(self, key: str) -> set[str]:
        """Every step reachable from *key*, excluding *key* itself."""
        seen: set[str] = set()
        queue = deque(self.successors(key))
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            queue.extend(self.successors(current))
        return seen

    def are_independent(self, a: str, b: str) -> bool:
        """True when no transitive edge connects *a* and *b*."""
        return a != b and b not in self.descendants(a) and a not in self.descendants(b)


def validate_definition(
    definition: PipelineDefinition,
    registry: AdapterRegistry,
    level: ValidationLevel = ValidationLevel.FULL,
) -> list[ValidationIssue]:
    """Run validation checks on *definition*.

    Args:
        definition: The definition to check.
        registry: Capability registry used to resolve adapter codes.
        level: ``QUICK`` runs structural checks only; ``FULL`` adds
            adapter-config, settings and trigger checks.

    Returns:
        A list of :class:`ValidationIssue` findings, possibly empty.
    """
    issues: list[ValidationIssue] = []

    _check_code(definition, issues)
    _check_unique_keys(definition, issues)
    _check_edge_references(definition, issues)
    _check_cycles(definition, issues)
    _check_adapters(definition, registry, issues)
    _check_routers(definition, issues)
    _check_terminal_steps(definition, issues)
    _check_sources(definition, issues)

    if level == ValidationLevel.FULL:
        _check_adapter_config(definition, registry, issues)
        _check_gates(definition, issues)
        _check_settings(definition, issues)
        _check_triggers(definition, issues)

    return issues


def compile_definition(
    definition: PipelineDefinition,
    registry: AdapterRegistry,
    level: ValidationLevel = ValidationLevel.FULL,
) -> CompiledGraph:
    """Validate *definition* and build its :class:`CompiledGraph`.

    Raises:
        CompilationError: If validation reports any issue. No steps are
            compiled in that case.
    """
    issues = validate_definition(definition, registry, level)
    if issues:
        raise CompilationError(issues)

    graph = CompiledGraph(definition=definition)
    for step in definition.steps:
        graph.steps[step.key] = step
        graph.outgoing[step.key] = []
        graph.incoming[step.key] = []
    for edge in definition.edges:
        graph.outgoing[edge.source].append(edge)
        graph.incoming[edge.target].append(edge)
    graph.order = _topological_order(definition)
    return graph


def _topological_order(definition: PipelineDefinition) -> list[str]:
    """Kahn's algorithm; ties resolve in declaration order."""
    position = {s.key: i for i, s in enumerate(definition.steps)}
    indegree = {s.key: 0 for s in definition.steps}
    adjacency: dict[str, list[str]] = {s.key: [] for s in definition.steps}
    for edge in definition.edges:
        adjacency[edge.source].append(edge.target)
        indegree[edge.target] += 1

    ready = sorted((k for k, d in indegree.items() if d == 0), key=position.__getitem__)
    order: list[str] = []
    while ready:
        key = ready.pop(0)
        order.append(key)
        for target in adjacency[key]:
            indegree[target] -= 1
            if indegree[target] == 0:
                ready.append(target)
                ready.sort(key=position.__getitem__)
    return order


# ---------------------------------------------------------------------------
# Structural checks
# ---------------------------------------------------------------------------


def _check_code(definition: PipelineDefinition, issues: list[ValidationIssue]) -> None:
    if not definition.code:
        issues.append(ValidationIssue("Pipeline code is required", "missing_code", field="code"))
    if not definition.steps:
        issues.append(ValidationIssue("Pipeline has no steps", "no_steps", field="steps"))


def _check_unique_keys(
    definition: PipelineDefinition, issues: list[ValidationIssue]
) -> None:
    seen: set[str] = set()
    for step in definition.steps:
        if not step.key:
            issues.append(ValidationIssue("Step key is required", "missing_key", field="key"))
            continue
        if step.key in seen:
            issues.append(
                ValidationIssue(
                    f"Duplicate step key '{step.key}'", "duplicate_key", step_key=step.key
                )
            )
        seen.add(step.key)


def _check_edge_references(
    definition: PipelineDefinition, issues: list[ValidationIssue]
) -> None:
    keys = {s.key for s in definition.steps}
    for edge in definition.edges:
        if edge.source not in keys:
            issues.append(
                ValidationIssue(
                    f"Edge source '{edge.source}' does not exist",
                    "dangling_edge",
                    step_key=edge.source,
                    field="from",
                )
            )
        if edge.target not in keys:
            issues.append(
                ValidationIssue(
                    f"Edge target '{edge.target}' does not exist",
                    "dangling_edge",
                    step_key=edge.target,
                    field="to",
                )
            )
        if edge.source == edge.target and edge.source in keys:
            issues.append(
                ValidationIssue(
                    "Step has an edge to itself", "cycle", step_key=edge.source
                )
            )


def _check_cycles(definition: PipelineDefinition, issues: list[ValidationIssue]) -> None:
    """Report every back-edge found by DFS with the cycle's step keys."""
    keys = {s.key for s in definition.steps}
    adj: dict[str, list[str]] = {k: [] for k in keys}
    for edge in definition.edges:
        if edge.source in keys and edge.target in keys and edge.source != edge.target:
            adj[edge.source].append(edge.target)

    WHITE, GRAY, BLACK = 0, 1, 2
    color: dict[str, int] = {k: WHITE for k in keys}
    cycles: list[list[str]] = []

    def dfs(node: str, path: list[str]) -> None:
        color[node] = GRAY
        path.append(node)
        for neighbor in adj[node]:
            if color[neighbor] == GRAY:
                cycles.append(path[path.index(neighbor):] + [neighbor])
            elif color[neighbor] == WHITE:
                dfs(neighbor, path)
        path.pop()
        color[node] = BLACK

    for step in definition.steps:
        if color.get(step.key) == WHITE:
            dfs(step.key, [])

    for cycle in cycles:
        issues.append(
            ValidationIssue(
                f"Cycle detected: {' -> '.join(cycle)}",
                "cycle",
                step_key=cycle[0],
            )
        )


def _check_adapters(
    definition: PipelineDefinition,
    registry: AdapterRegistry,
    issues: list[ValidationIssue],
) -> None:
    for step in definition.steps:
        if not step.adapter_code:
            if step.type not in CONTROL_STEP_TYPES:
                issues.append(
                    ValidationIssue(
                        "Step has no adapterCode",
                        "missing_adapter",
                        step_key=step.key,
                        field="adapterCode",
                    )
                )
            continue
        capability = registry.capability(step.adapter_code)
        if capability is None:
            issues.append(
                ValidationIssue(
                    f"Unknown adapter '{step.adapter_code}'",
                    "unknown_adapter",
                    step_key=step.key,
                    field="adapterCode",
                )
            )
        elif capability.type != step.type:
            issues.append(
                ValidationIssue(
                    f"Adapter '{step.adapter_code}' implements "
                    f"'{capability.type.value}' steps, not '{step.type.value}'",
                    "adapter_type_mismatch",
                    step_key=step.key,
                    field="adapterCode",
                )
            )


def _check_routers(definition: PipelineDefinition, issues: list[ValidationIssue]) -> None:
    for step in definition.steps:
        if step.type != StepType.ROUTE:
            continue
        outgoing = [e for e in definition.edges if e.source == step.key]
        labeled = [e for e in outgoing if e.label]
        if not labeled:
            issues.append(
                ValidationIssue(
                    "Route step needs at least one labeled outgoing edge",
                    "router_unlabeled",
                    step_key=step.key,
                )
            )
        for edge in outgoing:
            if not edge.label:
                issues.append(
                    ValidationIssue(
                        f"Edge {edge.source} -> {edge.target} leaves a router without a label",
                        "router_unlabeled",
                        step_key=step.key,
                    )
                )

        branch_labels: set[str] = set()
        branches = step.config.get("branches", [])
        if not isinstance(branches, list):
            issues.append(
                ValidationIssue(
                    "'branches' must be a list", "invalid_branches", step.key, "branches"
                )
            )
            continue
        for branch in branches:
            label = str(branch.get("label", "")) if isinstance(branch, dict) else ""
            if not label:
                issues.append(
                    ValidationIssue(
                        "Branch is missing a label", "invalid_branches", step.key, "branches"
                    )
                )
                continue
            branch_labels.add(label)
            error = validate_condition_syntax(str(branch.get("when", "")))
            if error:
                issues.append(
                    ValidationIssue(error, "invalid_condition", step.key, "branches")
                )
        for edge in labeled:
            if edge.label != ELSE_LABEL and edge.label not in branch_labels:
                issues.append(
                    ValidationIssue(
                        f"Edge label '{edge.label}' matches no branch",
                        "unknown_branch",
                        step_key=step.key,
                        field="branches",
                    )
                )


def _check_terminal_steps(
    definition: PipelineDefinition, issues: list[ValidationIssue]
) -> None:
    terminal = {s.key for s in definition.steps if s.is_terminal}
    for edge in definition.edges:
        if edge.source in terminal:
            issues.append(
                ValidationIssue(
                    f"Terminal step has an outgoing edge to '{edge.target}'",
                    "terminal_outgoing",
                    step_key=edge.source,
                )
            )


def _check_sources(definition: PipelineDefinition, issues: list[ValidationIssue]) -> None:
    targets = {e.target for e in definition.edges}
    for step in definition.steps:
        if step.key not in targets and step.type in CONTROL_STEP_TYPES:
            issues.append(
                ValidationIssue(
                    f"'{step.type.value}' step cannot be a source",
                    "control_source",
                    step_key=step.key,
                )
            )


# ---------------------------------------------------------------------------
# FULL checks
# ---------------------------------------------------------------------------


def _check_adapter_config(
    definition: PipelineDefinition,
    registry: AdapterRegistry,
    issues: list[ValidationIssue],
) -> None:
    for step in definition.steps:
        capability = registry.capability(step.adapter_code) if step.adapter_code else None
        if capability is None:
            continue
        for field_name, message in check_config(capability, step.config):
            issues.append(
                ValidationIssue(message, "invalid_config", step.key, field_name)
            )


def _check_gates(definition: PipelineDefinition, issues: list[ValidationIssue]) -> None:
    for step in definition.steps:
        if step.type != StepType.GATE:
            continue
        approval = str(step.config.get("approvalType", "MANUAL")).upper()
        if approval not in _GATE_APPROVAL_TYPES:
            issues.append(
                ValidationIssue(
                    f"Unknown approvalType '{approval}'",
                    "invalid_gate",
                    step.key,
                    "approvalType",
                )
            )
        if approval == "THRESHOLD":
            threshold = step.config.get("errorThresholdPercent")
            if not isinstance(threshold, (int, float)) or not 0 <= threshold <= 100:
                issues.append(
                    ValidationIssue(
                        "errorThresholdPercent must be between 0 and 100",
                        "invalid_gate",
                        step.key,
                        "errorThresholdPercent",
                    )
                )
        if approval == "TIMEOUT":
            timeout = step.config.get("timeoutSeconds")
            if not isinstance(timeout, (int, float)) or timeout <= 0:
                issues.append(
                    ValidationIssue(
                        "timeoutSeconds must be a positive number",
                        "invalid_gate",
                        step.key,
                        "timeoutSeconds",
                    )
                )


def _check_settings(definition: PipelineDefinition, issues: list[ValidationIssue]) -> None:
    settings = definition.settings
    if settings.throughput.batch_size <= 0:
        issues.append(
            ValidationIssue(
                "throughput.batchSize must be positive",
                "invalid_setting",
                field="throughput.batchSize",
            )
        )
    if settings.parallel.max_concurrent_steps <= 0:
        issues.append(
            ValidationIssue(
                "parallelExecution.maxConcurrentSteps must be positive",
                "invalid_setting",
                field="parallelExecution.maxConcurrentSteps",
            )
        )
    checkpoint = settings.checkpoint
    if checkpoint.enabled:
        if checkpoint.strategy == CheckpointStrategy.TIMESTAMP:
            if not checkpoint.watermark_field:
                issues.append(
                    ValidationIssue(
                        "TIMESTAMP checkpoints need a watermark field",
                        "invalid_setting",
                        field="checkpoint.field",
                    )
                )
        elif checkpoint.interval <= 0:
            issues.append(
                ValidationIssue(
                    "checkpoint.interval must be positive",
                    "invalid_setting",
                    field="checkpoint.interval",
                )
            )
    for step in definition.steps:
        batch = step.config.get("batchSize")
        if batch is not None and (not isinstance(batch, int) or batch <= 0):
            issues.append(
                ValidationIssue(
                    "batchSize must be a positive integer",
                    "invalid_setting",
                    step.key,
                    "batchSize",
                )
            )


def _check_triggers(definition: PipelineDefinition, issues: list[ValidationIssue]) -> None:
    seen: set[str] = set()
    for trigger in definition.triggers:
        location = f"triggers.{trigger.key}"
        if trigger.key in seen:
            issues.append(
                ValidationIssue(
                    f"Duplicate trigger key '{trigger.key}'", "invalid_trigger", field=location
                )
            )
        seen.add(trigger.key)

        if isinstance(trigger, ScheduleTrigger):
            try:
                CronTrigger.from_crontab(trigger.cron, timezone=trigger.timezone)
            except (ValueError, LookupError) as exc:
                issues.append(
                    ValidationIssue(
                        f"Invalid cron '{trigger.cron}' ({trigger.timezone}): {exc}",
                        "invalid_trigger",
                        field=location,
                    )
                )
        elif isinstance(trigger, WebhookTrigger):
            if not trigger.code:
                issues.append(
                    ValidationIssue("Webhook trigger needs a code", "invalid_trigger", field=location)
                )
            if trigger.auth_type not in _WEBHOOK_AUTH_TYPES:
                issues.append(
                    ValidationIssue(
                        f"Unknown webhook authType '{trigger.auth_type}'",
                        "invalid_trigger",
                        field=location,
                    )
                )
            elif trigger.auth_type != "none" and not trigger.secret_ref:
                issues.append(
                    ValidationIssue(
                        f"authType '{trigger.auth_type}' needs a secretRef",
                        "invalid_trigger",
                        field=location,
                    )
                )
        elif isinstance(trigger, MessageTrigger):
            if not trigger.queue_name:
                issues.append(
                    ValidationIssue(
                        "Message trigger needs a queueName", "invalid_trigger", field=location
                    )
                )
            if trigger.batch_size <= 0:
                issues.append(
                    ValidationIssue(
                        "Message trigger batchSize must be positive",
                        "invalid_trigger",
                        field=location,
                    )
                )
        elif isinstance(trigger, FileTrigger):
            if not trigger.connection_ref:
                issues.append(
                    ValidationIssue(
                        "File trigger needs a connectionRef", "invalid_trigger", field=location
                    )
                )
