"""Built-in workflow templates.

Templates live as YAML files in canvasflow/config/templates/. Each one lists
its nodes (type, label, optional config and canvas position) and its edges as
``[source_index, target_index]`` pairs into the node list. Instantiating a
template assigns fresh IDs so several copies can sit on one canvas.
"""

import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from canvasflow.core.graph_schema import CONFIG_FIELDS, Edge, Node, NodeType, WorkflowGraph

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).parent.parent / "config" / "templates"


class TemplateNotFoundError(Exception):
    """No template with the requested ID."""

    pass


class TemplateError(Exception):
    """A template file is malformed."""

    pass


@dataclass
class WorkflowTemplate:
    id: str
    name: str
    description: str = ""
    category: str = "general"
    nodes: list[dict[str, Any]] = field(default_factory=list)
    edges: list[tuple[int, int]] = field(default_factory=list)
    path: Path | None = None


def _load_template(path: Path) -> WorkflowTemplate:
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise TemplateError(f"Invalid YAML in {path}: {e}")

    if not isinstance(data, dict) or "id" not in data or "name" not in data:
        raise TemplateError(f"Template {path} must be a mapping with 'id' and 'name'")

    nodes = data.get("nodes") or []
    edges = []
    for pair in data.get("edges") or []:
        if not isinstance(pair, list) or len(pair) != 2:
            raise TemplateError(f"Template {path}: edge {pair!r} must be [source, target]")
        source, target = pair
        if not all(isinstance(i, int) and not isinstance(i, bool) for i in pair):
            raise TemplateError(f"Template {path}: edge {pair!r} must hold node indexes")
        if not (0 <= source < len(nodes) and 0 <= target < len(nodes)):
            raise TemplateError(f"Template {path}: edge {pair!r} points outside the node list")
        edges.append((source, target))

    return WorkflowTemplate(
        id=data["id"],
        name=data["name"],
        description=data.get("description", ""),
        category=data.get("category", "general"),
        nodes=nodes,
        edges=edges,
        path=path,
    )


def list_templates(templates_dir: Path = TEMPLATES_DIR) -> list[WorkflowTemplate]:
    """All templates, sorted by ID."""
    templates = [_load_template(p) for p in sorted(templates_dir.glob("*.yaml"))]
    return sorted(templates, key=lambda t: t.id)


def get_template(template_id: str, templates_dir: Path = TEMPLATES_DIR) -> WorkflowTemplate:
    for template in list_templates(templates_dir):
        if template.id == template_id:
            return template
    raise TemplateNotFoundError(f"Template '{template_id}' not found")


def instantiate_template(template_id: str, templates_dir: Path = TEMPLATES_DIR) -> WorkflowGraph:
    """Build a WorkflowGraph from a template with fresh node and edge IDs.

    Raises:
        TemplateNotFoundError: Unknown template ID
        TemplateError: A node in the template does not validate
    """
    template = get_template(template_id, templates_dir)

    nodes = []
    for index, entry in enumerate(template.nodes):
        try:
            node_type = NodeType(entry["type"])
            config_field, _ = CONFIG_FIELDS[node_type]
            node = Node(
                id=str(uuid.uuid4()),
                type=node_type,
                label=entry.get("label"),
                ui_metadata={"position": entry["position"]} if "position" in entry else None,
                **{config_field: entry.get("config") or {}},
            )
        except (KeyError, ValueError, ValidationError) as e:
            raise TemplateError(f"Template '{template_id}' node {index} is invalid: {e}")
        nodes.append(node)

    edges = [
        Edge(id=str(uuid.uuid4()), source=nodes[source].id, target=nodes[target].id)
        for source, target in template.edges
    ]

    logger.debug(f"Instantiated template '{template_id}' with {len(nodes)} node(s)")
    return WorkflowGraph(
        id=str(uuid.uuid4()),
        name=template.name,
        description=template.description,
        nodes=nodes,
        edges=edges,
    )
