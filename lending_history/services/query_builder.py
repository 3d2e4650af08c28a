"""
Builds paginated GraphQL data queries from a SchemaConfig.

Pure string assembly: no network I/O happens here.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from lending_history.services.schema_config import ALL_ROLES, ASSET_NONE, SchemaConfig

USER_VARIABLE = "user"
FROM_VARIABLE = "from"
SKIP_VARIABLE = "skip"

DEFAULT_PAGE_SIZE = 1000

# Scalars that The Graph expects as JSON strings
STRING_SCALARS = ("BigInt", "BigDecimal", "String", "Bytes", "ID")

INDENT = "  "


@dataclass(frozen=True)
class BuiltQuery:
    text: str
    query_field: str
    page_size: int
    variable_names: Tuple[str, ...]


def _insert(tree: Dict[str, Any], path: Tuple[str, ...]):
    node = tree
    for segment in path[:-1]:
        child = node.get(segment)
        if child is None:
            child = node[segment] = {}
        node = child
    node.setdefault(path[-1], None)


def _render(tree: Dict[str, Any], depth: int) -> List[str]:
    pad = INDENT * depth
    lines: List[str] = []
    for name, children in tree.items():
        if children:
            lines.append(f"{pad}{name} {{")
            lines.extend(_render(children, depth + 1))
            lines.append(f"{pad}}}")
        else:
            lines.append(f"{pad}{name}")
    return lines


def selection_tree(config: SchemaConfig) -> Dict[str, Any]:
    """Nested dict of every field to select; leaves map to None"""
    tree: Dict[str, Any] = {}
    for role in ALL_ROLES:
        path = config.path_for(role)
        if path:
            _insert(tree, path)

    asset = config.asset_path
    if asset.shape != ASSET_NONE and asset.segments:
        for leaf in asset.leaf_fields:
            _insert(tree, asset.segments + (leaf,))
    return tree


def _field_arguments(config: SchemaConfig, page_size: int) -> List[str]:
    filters = config.filter_args
    arguments: List[str] = []
    where_entries: List[str] = []

    if filters.user_arg_name:
        entry = f"{filters.user_arg_name}: ${USER_VARIABLE}"
        (where_entries if filters.user_in_where else arguments).append(entry)
    if filters.timestamp_arg_name:
        entry = f"{filters.timestamp_arg_name}: ${FROM_VARIABLE}"
        (where_entries if filters.timestamp_in_where else arguments).append(entry)

    if where_entries:
        arguments.append("where: { " + ", ".join(where_entries) + " }")
    elif filters.requires_empty_where_object:
        arguments.append("where: {}")

    if config.ordering_field:
        arguments.append(f"orderBy: {config.ordering_field}")
        if config.has_order_direction:
            arguments.append("orderDirection: asc")

    arguments.append(f"first: {page_size}")
    arguments.append(f"skip: ${SKIP_VARIABLE}")
    return arguments


def _variable_declarations(config: SchemaConfig) -> List[Tuple[str, str]]:
    filters = config.filter_args
    declared: List[Tuple[str, str]] = []
    if filters.user_arg_name:
        declared.append((USER_VARIABLE, filters.user_arg_type or "String"))
    if filters.timestamp_arg_name:
        declared.append((FROM_VARIABLE, filters.timestamp_arg_type or "Int"))
    declared.append((SKIP_VARIABLE, "Int"))
    return declared


def operation_name(query_field: str) -> str:
    return "Fetch" + query_field[:1].upper() + query_field[1:]


def build_query(config: SchemaConfig, page_size: int = DEFAULT_PAGE_SIZE) -> BuiltQuery:
    """
    Build the data query for one event collection.

    Results are ordered oldest-first so skip-based paging and
    last-seen watermarks agree.
    """
    declarations = _variable_declarations(config)
    header = ", ".join(f"${name}: {type_name}!" for name, type_name in declarations)

    lines = [f"query {operation_name(config.query_field)}({header}) {{"]
    lines.append(f"{INDENT}{config.query_field}(")
    lines.extend(f"{INDENT * 2}{argument}" for argument in _field_arguments(config, page_size))
    lines.append(f"{INDENT}) {{")
    lines.extend(_render(selection_tree(config), 2))
    lines.append(f"{INDENT}}}")
    lines.append("}")

    return BuiltQuery(
        text="\n".join(lines),
        query_field=config.query_field,
        page_size=page_size,
        variable_names=tuple(name for name, _ in declarations),
    )


def build_filter_variables(
    config: SchemaConfig,
    address: str,
    from_timestamp_sec: Optional[int] = None
) -> Dict[str, Any]:
    """Values for $user and $from; $skip is supplied by the paginator"""
    filters = config.filter_args
    variables: Dict[str, Any] = {}
    if filters.user_arg_name:
        variables[USER_VARIABLE] = address.lower()
    if filters.timestamp_arg_name:
        from_ts = max(0, int(from_timestamp_sec or 0))
        variables[FROM_VARIABLE] = (
            str(from_ts) if filters.timestamp_arg_type in STRING_SCALARS else from_ts
        )
    return variables
