"""
Conflict resolution for merged schema definitions.
"""

from typing import Dict, List, Sequence, Tuple, TypeVar

from service_hub.app.domain.models import (
    ConflictKind,
    FederatedSchema,
    PromptDefinition,
    ResourceDefinition,
    SchemaConflict,
    ServerSchema,
    ToolDefinition,
)

Definition = TypeVar("Definition", ToolDefinition, ResourceDefinition, PromptDefinition)


def resolve_conflicts(
    definitions: Sequence[Definition],
    kind: ConflictKind,
) -> Tuple[List[Definition], List[SchemaConflict]]:
    """Group by name; every member of a colliding group becomes ``namespace:name``.

    Output keeps first-seen group order and contributor order within a group.
    """
    groups: Dict[str, List[Definition]] = {}
    for definition in definitions:
        groups.setdefault(definition.name, []).append(definition)

    resolved: List[Definition] = []
    conflicts: List[SchemaConflict] = []
    for name, members in groups.items():
        if len(members) == 1:
            resolved.append(members[0])
            continue

        conflicts.append(SchemaConflict(
            type=kind,
            name=name,
            servers=[member.namespace for member in members],
        ))
        for member in members:
            resolved.append(member.model_copy(update={"name": f"{member.namespace}:{member.name}"}))

    return resolved, conflicts


def merge_schemas(schemas: Sequence[ServerSchema], last_updated: str) -> FederatedSchema:
    tools: List[ToolDefinition] = []
    resources: List[ResourceDefinition] = []
    prompts: List[PromptDefinition] = []
    capabilities: Dict[str, None] = {}
    namespaces: Dict[str, None] = {}

    for schema in schemas:
        tools.extend(schema.tools)
        resources.extend(schema.resources)
        prompts.extend(schema.prompts)
        capabilities.update(dict.fromkeys(schema.capabilities))
        namespaces[schema.namespace] = None

    resolved_tools, tool_conflicts = resolve_conflicts(tools, ConflictKind.TOOL)
    resolved_resources, resource_conflicts = resolve_conflicts(resources, ConflictKind.RESOURCE)
    resolved_prompts, prompt_conflicts = resolve_conflicts(prompts, ConflictKind.PROMPT)

    return FederatedSchema(
        servers=[schema.server_id for schema in schemas],
        tools=resolved_tools,
        resources=resolved_resources,
        prompts=resolved_prompts,
        capabilities=list(capabilities),
        namespaces=list(namespaces),
        conflicts=tool_conflicts + resource_conflicts + prompt_conflicts,
        last_updated=last_updated,
    )
