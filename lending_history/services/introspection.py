"""
GraphQL schema introspection helpers.

Type references come back from introspection as nested dicts:
{"kind": "NON_NULL", "name": None, "ofType": {"kind": "LIST", ...}}.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional, Union

from lending_history.services.graphql_client import SubgraphClient

logger = logging.getLogger(__name__)

WRAPPER_KINDS = ("NON_NULL", "LIST")
LEAF_KINDS = ("SCALAR", "ENUM")

TYPE_REF_FRAGMENT = """
fragment TypeRef on __Type {
  kind
  name
  ofType {
    kind
    name
    ofType {
      kind
      name
      ofType {
        kind
        name
        ofType { kind name }
      }
    }
  }
}
"""

ROOT_FIELDS_QUERY = """
query RootFields {
  __schema {
    queryType {
      name
      fields {
        name
        type { ...TypeRef }
        args {
          name
          defaultValue
          type { ...TypeRef }
        }
      }
    }
  }
}
""" + TYPE_REF_FRAGMENT

TYPE_FIELDS_QUERY = """
query TypeFields($name: String!) {
  __type(name: $name) {
    name
    kind
    fields {
      name
      type { ...TypeRef }
    }
  }
}
""" + TYPE_REF_FRAGMENT

INPUT_FIELDS_QUERY = """
query InputFields($name: String!) {
  __type(name: $name) {
    name
    kind
    inputFields {
      name
      type { ...TypeRef }
    }
  }
}
""" + TYPE_REF_FRAGMENT


def _innermost(type_ref: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    current = type_ref
    while current:
        if current.get("kind") in WRAPPER_KINDS:
            current = current.get("ofType")
            continue
        return current
    return None


def unwrap_type_name(type_ref: Optional[Dict[str, Any]]) -> Optional[str]:
    """Walk NON_NULL/LIST wrappers down to the concrete type name"""
    inner = _innermost(type_ref)
    return inner.get("name") if inner else None


def unwrap_type_kind(type_ref: Optional[Dict[str, Any]]) -> Optional[str]:
    inner = _innermost(type_ref)
    return inner.get("kind") if inner else None


def is_list_type(type_ref: Optional[Dict[str, Any]]) -> bool:
    current = type_ref
    while current:
        if current.get("kind") == "LIST":
            return True
        current = current.get("ofType")
    return False


def is_required_arg(arg: Dict[str, Any]) -> bool:
    """Non-null argument without a server-side default"""
    type_ref = arg.get("type") or {}
    return type_ref.get("kind") == "NON_NULL" and arg.get("defaultValue") is None


def is_leaf_field(field: Dict[str, Any]) -> bool:
    return unwrap_type_kind(field.get("type")) in LEAF_KINDS


def field_names(fields: Iterable[Union[str, Dict[str, Any]]]) -> List[str]:
    return [f if isinstance(f, str) else f.get("name") for f in fields]


def pick_field(
    fields: Iterable[Union[str, Dict[str, Any]]],
    candidates: Iterable[str]
) -> Optional[str]:
    """Return the first candidate name present in fields, in candidate order"""
    available = set(field_names(fields))
    for name in candidates:
        if name in available:
            return name
    return None


def find_field(fields: Iterable[Dict[str, Any]], name: str) -> Optional[Dict[str, Any]]:
    for f in fields:
        if f.get("name") == name:
            return f
    return None


class SchemaIntrospector:
    """
    Introspection calls against one endpoint.
    Type lookups are memoized for the lifetime of the instance, so one
    discovery run asks for each named type at most once.
    """

    def __init__(self, client: SubgraphClient, endpoint_url: str):
        self.client = client
        self.endpoint_url = endpoint_url
        self._root_fields: Optional[List[Dict[str, Any]]] = None
        self._type_fields: Dict[str, List[Dict[str, Any]]] = {}
        self._input_fields: Dict[str, List[Dict[str, Any]]] = {}

    async def root_fields(self) -> List[Dict[str, Any]]:
        if self._root_fields is None:
            data = await self.client.execute(self.endpoint_url, ROOT_FIELDS_QUERY)
            query_type = (data.get("__schema") or {}).get("queryType") or {}
            self._root_fields = query_type.get("fields") or []
            logger.debug(f"Introspected {len(self._root_fields)} root fields")
        return self._root_fields

    async def type_fields(self, type_name: Optional[str]) -> List[Dict[str, Any]]:
        if not type_name:
            return []
        if type_name not in self._type_fields:
            data = await self.client.execute(
                self.endpoint_url, TYPE_FIELDS_QUERY, {"name": type_name}
            )
            self._type_fields[type_name] = (data.get("__type") or {}).get("fields") or []
        return self._type_fields[type_name]

    async def input_fields(self, type_name: Optional[str]) -> List[Dict[str, Any]]:
        if not type_name:
            return []
        if type_name not in self._input_fields:
            data = await self.client.execute(
                self.endpoint_url, INPUT_FIELDS_QUERY, {"name": type_name}
            )
            self._input_fields[type_name] = (data.get("__type") or {}).get("inputFields") or []
        return self._input_fields[type_name]
