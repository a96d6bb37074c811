"""Pipeline definitions: data model, validation, events and DOT interchange.

Definitions are plain documents describing a DAG of extract, transform,
route, gate and load steps. :mod:`relayflow.pipeline.validator` compiles
them before anything runs and :mod:`relayflow.pipeline.lifecycle` decides
which revision is live.
"""

from relayflow.pipeline.conditions import evaluate_condition
from relayflow.pipeline.dot import load_definition, parse_dot_file, parse_dot_string, render_dot
from relayflow.pipeline.events import EngineEvent, EventEmitter, EventType
from relayflow.pipeline.models import (
    Edge,
    PipelineDefinition,
    Run,
    RunStatus,
    Settings,
    Step,
    StepType,
)

__all__ = [
    "Edge",
    "EngineEvent",
    "EventEmitter",
    "EventType",
    "PipelineDefinition",
    "Run",
    "RunStatus",
    "Settings",
    "Step",
    "StepType",
    "evaluate_condition",
    "load_definition",
    "parse_dot_file",
    "parse_dot_string",
    "render_dot",
]
