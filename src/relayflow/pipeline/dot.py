"""GraphViz DOT import and export for pipeline definitions.

Uses the ``pydot`` library in both directions. Step types map to node
shapes through :data:`SHAPE_STEP_TYPES`; an explicit ``type`` attribute
overrides the shape. Step configuration and pipeline settings travel as
JSON-encoded ``config`` / ``settings`` attributes::

    digraph orders {
        extract [shape=Mdiamond, adapter="memory-extract"];
        check   [type=validate, adapter="required-fields",
                 config="{\\"fields\\": [\\"id\\"]}"];
        load    [shape=Msquare, adapter="memory-load"];
        extract -> check -> load;
    }
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pydot

from relayflow.pipeline.models import (
    TERMINAL_STEP_TYPES,
    Edge,
    PipelineDefinition,
    Settings,
    Step,
    StepType,
)


class DotParseError(ValueError):
    """Raised when DOT content cannot be turned into a definition."""


SHAPE_STEP_TYPES: dict[str, StepType] = {
    "Mdiamond": StepType.EXTRACT,
    "box": StepType.TRANSFORM,
    "octagon": StepType.VALIDATE,
    "box3d": StepType.ENRICH,
    "diamond": StepType.ROUTE,
    "hexagon": StepType.GATE,
    "Msquare": StepType.LOAD,
}

_TYPE_SHAPES: dict[StepType, str] = {
    StepType.EXTRACT: "Mdiamond",
    StepType.TRANSFORM: "box",
    StepType.VALIDATE: "octagon",
    StepType.ENRICH: "box3d",
    StepType.ROUTE: "diamond",
    StepType.GATE: "hexagon",
}


def definition_to_dot(definition: PipelineDefinition) -> pydot.Dot:
    """Build a :class:`pydot.Dot` graph for *definition*."""
    graph = pydot.Dot(graph_name=definition.code or "pipeline", graph_type="digraph")
    graph.set("rankdir", "LR")
    if definition.name:
        graph.set("label", definition.name)

    for step in definition.steps:
        shape = "Msquare" if step.type in TERMINAL_STEP_TYPES else _TYPE_SHAPES[step.type]
        attrs: dict[str, Any] = {
            "shape": shape,
            "type": step.type.value,
            "label": step.name or step.key,
        }
        if step.adapter_code:
            attrs["adapter"] = step.adapter_code
        if step.config:
            attrs["config"] = json.dumps(step.config, sort_keys=True)
        graph.add_node(pydot.Node(step.key, **attrs))

    for edge in definition.edges:
        attrs = {"label": edge.label} if edge.label else {}
        graph.add_edge(pydot.Edge(edge.source, edge.target, **attrs))
    return graph


def render_dot(definition: PipelineDefinition) -> str:
    """Return the DOT source text for *definition*."""
    return definition_to_dot(definition).to_string()


def parse_dot_file(path: str | Path) -> PipelineDefinition:
    """Parse a DOT file into a definition; the file stem is the fallback code."""
    path = Path(path)
    return parse_dot_string(path.read_text(), code=path.stem)


def parse_dot_string(dot_content: str, code: str = "pipeline") -> PipelineDefinition:
    """Parse DOT source into a :class:`PipelineDefinition`.

    Raises:
        DotParseError: If the content holds no graph, a node has an
            unknown type, or a JSON attribute is malformed.
    """
    graphs = pydot.graph_from_dot_data(dot_content)
    if not graphs:
        raise DotParseError("No graph found in DOT content")
    graph = graphs[0]

    graph_attrs = _clean_attrs(graph.obj_dict.get("attributes", {}))
    steps = [
        _build_step(node)
        for node in graph.get_nodes()
        if _unquote(node.get_name()) not in ("node", "edge", "graph")
    ]
    edges = [_build_edge(e) for e in graph.get_edges()]
    declared = {s.key for s in steps}
    for edge in edges:
        # Nodes referenced only by edges become transform steps.
        for key in (edge.source, edge.target):
            if key not in declared:
                steps.append(Step(key=key, type=StepType.TRANSFORM))
                declared.add(key)

    settings = Settings()
    if "settings" in graph_attrs:
        settings = Settings.from_dict(_load_json(graph_attrs["settings"], "settings"))

    return PipelineDefinition(
        code=_unquote(graph.get_name()) or code,
        name=graph_attrs.get("label", ""),
        steps=steps,
        edges=edges,
        settings=settings,
    )


def load_definition(path: str | Path) -> PipelineDefinition:
    """Load a definition from a ``.json`` or ``.dot``/``.gv`` file."""
    path = Path(path)
    if path.suffix in (".dot", ".gv"):
        return parse_dot_file(path)
    return PipelineDefinition.from_dict(json.loads(path.read_text()))


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _build_step(node: pydot.Node) -> Step:
    key = _unquote(node.get_name())
    attrs = _clean_attrs(node.obj_dict.get("attributes", {}))
    raw_type = attrs.get("type")
    if raw_type:
        try:
            step_type = StepType(raw_type.lower())
        except ValueError as exc:
            raise DotParseError(f"Node '{key}' has unknown type '{raw_type}'") from exc
    else:
        step_type = SHAPE_STEP_TYPES.get(attrs.get("shape", "box"), StepType.TRANSFORM)

    config = _load_json(attrs["config"], f"config of '{key}'") if "config" in attrs else {}
    label = attrs.get("label", "")
    return Step(
        key=key,
        type=step_type,
        adapter_code=attrs.get("adapter", ""),
        config=config,
        name=label if label != key else "",
    )


def _build_edge(dot_edge: pydot.Edge) -> Edge:
    attrs = _clean_attrs(dot_edge.obj_dict.get("attributes", {}))
    return Edge(
        source=_unquote(str(dot_edge.get_source())),
        target=_unquote(str(dot_edge.get_destination())),
        label=attrs.get("label") or None,
    )


def _load_json(raw: str, what: str) -> dict[str, Any]:
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise DotParseError(f"Invalid JSON in {what}: {exc}") from exc
    if not isinstance(value, dict):
        raise DotParseError(f"Expected a JSON object in {what}")
    return value


def _clean_attrs(attrs: dict[str, Any]) -> dict[str, str]:
    return {k: _unquote(str(v)) for k, v in attrs.items()}


def _unquote(value: str) -> str:
    """Remove surrounding double-quotes and DOT escapes from a string."""
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return value[1:-1].replace('\\"', '"')
    return value

