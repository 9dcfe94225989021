"""
Schema translation for LLM tool calling.

Converts OpenAPI / JSON-Schema style definitions (as produced by Pydantic's
``model_json_schema`` or advertised by tool servers) into the restricted
dialect LLM tool-calling APIs accept: no unions, no references, string
enums only.

Translation runs in two passes. ``translate`` turns a raw schema dict into
a ``SchemaNode`` tree, leaving ``$ref`` pointers as ``ReferenceSchema``
nodes. ``inline_references`` then replaces every reference with its
definition, substituting an empty object for unknown names and for
re-entry into a definition that is already being inlined.
"""

import inspect
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple, Type

from pydantic import BaseModel

logger = logging.getLogger(__name__)

REF_PREFIXES = ("#/$defs/", "#/definitions/")


@dataclass(frozen=True)
class SchemaNode:
    description: Optional[str] = None


@dataclass(frozen=True)
class ObjectSchema(SchemaNode):
    properties: Dict[str, SchemaNode] = field(default_factory=dict)
    required: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ArraySchema(SchemaNode):
    items: Optional[SchemaNode] = None


@dataclass(frozen=True)
class StringSchema(SchemaNode):
    pass


@dataclass(frozen=True)
class NumberSchema(SchemaNode):
    pass


@dataclass(frozen=True)
class IntegerSchema(SchemaNode):
    pass


@dataclass(frozen=True)
class BooleanSchema(SchemaNode):
    pass


@dataclass(frozen=True)
class NullSchema(SchemaNode):
    pass


@dataclass(frozen=True)
class EnumSchema(SchemaNode):
    values: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ReferenceSchema(SchemaNode):
    name: str = ""


_LEAVES: Dict[str, Type[SchemaNode]] = {
    "string": StringSchema,
    "number": NumberSchema,
    "integer": IntegerSchema,
    "boolean": BooleanSchema,
}


def _description(node: Mapping[str, Any]) -> Optional[str]:
    description = node.get("description") or node.get("title")
    return str(description) if description else None


def translate(node: Mapping[str, Any], definitions: Optional[Mapping[str, SchemaNode]] = None) -> SchemaNode:
    """
    Translate one raw schema dict into a SchemaNode tree.

    Args:
        node: Raw schema
        definitions: Translated definitions table. When given, references
            are inlined before returning; otherwise they are left in place.

    Returns:
        The translated node
    """
    translated = _translate(node)
    if definitions is not None:
        translated = inline_references(translated, definitions)
    return translated


def _translate(node: Mapping[str, Any]) -> SchemaNode:
    description = _description(node)

    if "enum" in node:
        values = tuple(str(value) for value in node["enum"] or () if value is not None)
        return EnumSchema(description=description, values=values)

    if "anyOf" in node:
        # Heuristic: most tool-calling backends have no unions, so prefer the
        # first branch that is not a plain string. Not a correctness guarantee.
        for branch in node["anyOf"] or ():
            if isinstance(branch, Mapping) and branch.get("type") != "string":
                chosen = _translate(branch)
                if chosen.description is None and description is not None:
                    chosen = replace(chosen, description=description)
                return chosen
        return StringSchema(description=description)

    ref = node.get("$ref")
    if isinstance(ref, str):
        for prefix in REF_PREFIXES:
            if ref.startswith(prefix):
                return ReferenceSchema(description=description, name=ref[len(prefix):])
        logger.debug(f"Unsupported reference '{ref}', leaving it unresolved")
        return ReferenceSchema(description=description, name=ref)

    schema_type = node.get("type")
    if schema_type == "object":
        return _translate_object(node, description)
    if schema_type == "array":
        items = node.get("items")
        return ArraySchema(
            description=description,
            items=_translate(items) if isinstance(items, Mapping) else None,
        )
    if schema_type is None or schema_type == "null":
        return NullSchema(description=description)
    if isinstance(schema_type, str) and schema_type in _LEAVES:
        return _LEAVES[schema_type](description=description)

    logger.debug(f"Unknown schema type {schema_type!r}, treating it as string")
    return StringSchema(description=description)


def _translate_object(node: Mapping[str, Any], description: Optional[str]) -> ObjectSchema:
    properties: Dict[str, SchemaNode] = {}
    for name, property_schema in (node.get("properties") or {}).items():
        # A property literally named "type" clashes with the schema keyword
        if name == "type" or not isinstance(property_schema, Mapping):
            continue
        translated = _translate(property_schema)
        if isinstance(translated, NullSchema):
            continue
        properties[name] = translated

    required = tuple(name for name in node.get("required") or () if name in properties)
    return ObjectSchema(description=description, properties=properties, required=required)


def inline_references(
    node: SchemaNode,
    definitions: Mapping[str, SchemaNode],
    _in_progress: FrozenSet[str] = frozenset(),
) -> SchemaNode:
    """
    Replace every ReferenceSchema in ``node`` with its definition.

    Unknown names and cycles resolve to an empty ObjectSchema that keeps
    the reference's description.

    Args:
        node: Translated tree, possibly containing references
        definitions: Translated definitions table keyed by name

    Returns:
        An acyclic tree with no ReferenceSchema nodes
    """
    if isinstance(node, ReferenceSchema):
        target = definitions.get(node.name)
        if target is None or node.name in _in_progress:
            return ObjectSchema(description=node.description)
        inlined = inline_references(target, definitions, _in_progress | {node.name})
        if node.description is not None:
            inlined = replace(inlined, description=node.description)
        return inlined

    if isinstance(node, ObjectSchema):
        return replace(
            node,
            properties={
                name: inline_references(child, definitions, _in_progress)
                for name, child in node.properties.items()
            },
        )

    if isinstance(node, ArraySchema) and node.items is not None:
        return replace(node, items=inline_references(node.items, definitions, _in_progress))

    return node


def from_openapi_schema(schema: Mapping[str, Any], description: Optional[str] = None) -> ObjectSchema:
    """
    Translate a complete object schema, including its ``$defs``, into a
    reference-free ObjectSchema.

    Args:
        schema: Root schema, e.g. from ``model_json_schema()``
        description: Overrides the root description when given

    Returns:
        Translated object schema
    """
    raw_definitions = {**(schema.get("definitions") or {}), **(schema.get("$defs") or {})}
    definitions = {name: _translate(definition) for name, definition in raw_definitions.items()}

    if "$ref" in schema and not schema.get("properties"):
        # Recursive models put the root in $defs and point at it
        root = _translate(schema)
    else:
        root = _translate_object(schema, _description(schema))

    inlined = inline_references(root, definitions)
    if not isinstance(inlined, ObjectSchema):
        inlined = ObjectSchema(description=inlined.description)
    if description:
        inlined = replace(inlined, description=description)
    return inlined


def model_to_tool_schema(model: Type[BaseModel], description: Optional[str] = None) -> ObjectSchema:
    """
    Translate a Pydantic model class into a tool parameter schema.

    Raises:
        TypeError: If the input is not a Pydantic model class
    """
    if not inspect.isclass(model) or not issubclass(model, BaseModel):
        raise TypeError(f"Expected a Pydantic model class, got {type(model).__name__}")
    return from_openapi_schema(model.model_json_schema(), description=description or inspect.getdoc(model))


def to_json_schema(node: SchemaNode) -> Dict[str, Any]:
    """
    Render a translated tree as a JSON schema dict in the tool dialect.

    Raises:
        ValueError: If the tree still contains references
    """
    rendered: Dict[str, Any]
    if isinstance(node, ObjectSchema):
        rendered = {
            "type": "object",
            "properties": {name: to_json_schema(child) for name, child in node.properties.items()},
        }
        if node.required:
            rendered["required"] = list(node.required)
    elif isinstance(node, ArraySchema):
        rendered = {"type": "array"}
        if node.items is not None:
            rendered["items"] = to_json_schema(node.items)
    elif isinstance(node, EnumSchema):
        rendered = {"type": "string", "enum": list(node.values)}
    elif isinstance(node, ReferenceSchema):
        raise ValueError(f"Unresolved reference '{node.name}'; inline references before rendering")
    elif isinstance(node, NullSchema):
        rendered = {"type": "null"}
    else:
        type_name = next(name for name, leaf in _LEAVES.items() if isinstance(node, leaf))
        rendered = {"type": type_name}

    if node.description:
        rendered["description"] = node.description
    return rendered
