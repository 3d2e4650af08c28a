import json
import re
from types import SimpleNamespace

import httpx
import pytest
import pytest_asyncio

from lending_history.core.config import Settings
from lending_history.services.graphql_client import SubgraphClient

AAVE_URL = "https://aave.subgraph.test/polygon"
COMPOUND_URL = "https://compound.subgraph.test/arbitrum"

_DATA_FIELD_RE = re.compile(r"^  (\w+)\($", re.M)
_FIRST_RE = re.compile(r"first: (\d+)")


# GraphQL type reference builders
def scalar(name):
    return {"kind": "SCALAR", "name": name, "ofType": None}


def enum(name):
    return {"kind": "ENUM", "name": name, "ofType": None}


def obj(name):
    return {"kind": "OBJECT", "name": name, "ofType": None}


def input_obj(name):
    return {"kind": "INPUT_OBJECT", "name": name, "ofType": None}


def non_null(type_ref):
    return {"kind": "NON_NULL", "name": None, "ofType": type_ref}


def list_of(type_ref):
    return {"kind": "LIST", "name": None, "ofType": type_ref}


def field(name, type_ref):
    return {"name": name, "type": type_ref}


def arg(name, type_ref, default=None):
    return {"name": name, "type": type_ref, "defaultValue": default}


def collection(name, type_name, args):
    return {"name": name, "type": non_null(list_of(non_null(obj(type_name)))), "args": args}


def graph_args(filter_type, order_enum):
    """Arguments The Graph generates for every entity collection"""
    return [
        arg("skip", scalar("Int"), "0"),
        arg("first", scalar("Int"), "100"),
        arg("orderBy", enum(order_enum)),
        arg("orderDirection", enum("OrderDirection")),
        arg("where", input_obj(filter_type)),
        arg("block", input_obj("Block_height")),
        arg("subgraphError", non_null(enum("_SubgraphErrorPolicy_")), "deny"),
    ]


class FakeSubgraph:
    """
    In-process GraphQL endpoint for httpx.MockTransport.

    Answers the three introspection operations from `root_fields`, `types` and
    `input_types`, and data queries from `data` (query field -> records),
    honoring `first`, `$skip` and a `$from` lower bound on `timestamp`.
    """

    def __init__(self, root_fields, types, input_types=None, data=None):
        self.root_fields = root_fields
        self.types = types
        self.input_types = input_types or {}
        self.data = data or {}
        self.requests = []
        # operation or query field -> number of upcoming calls that fail
        self.failures = {}

    def count(self, operation):
        return sum(1 for op, _ in self.requests if op == operation)

    def _fail(self, operation):
        remaining = self.failures.get(operation, 0)
        if remaining:
            self.failures[operation] = remaining - 1
            return httpx.Response(200, json={"errors": [{"message": f"{operation} unavailable"}]})
        return None

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        query = body["query"]
        variables = body.get("variables") or {}

        if "query RootFields" in query:
            self.requests.append(("RootFields", variables))
            failure = self._fail("RootFields")
            if failure:
                return failure
            return httpx.Response(200, json={
                "data": {"__schema": {"queryType": {"name": "Query", "fields": self.root_fields}}}
            })

        if "query TypeFields" in query:
            self.requests.append(("TypeFields", variables))
            name = variables["name"]
            fields = self.types.get(name)
            node = {"name": name, "kind": "OBJECT", "fields": fields} if fields is not None else None
            return httpx.Response(200, json={"data": {"__type": node}})

        if "query InputFields" in query:
            self.requests.append(("InputFields", variables))
            name = variables["name"]
            fields = self.input_types.get(name)
            node = {"name": name, "kind": "INPUT_OBJECT", "inputFields": fields} if fields is not None else None
            return httpx.Response(200, json={"data": {"__type": node}})

        match = _DATA_FIELD_RE.search(query)
        if not match:
            return httpx.Response(400, json={"errors": [{"message": "Unrecognized query"}]})
        query_field = match.group(1)
        self.requests.append((query_field, variables))
        failure = self._fail(query_field)
        if failure:
            return failure

        first = int(_FIRST_RE.search(query).group(1))
        skip = int(variables.get("skip", 0))
        rows = self.data.get(query_field, [])
        if "from" in variables:
            rows = [r for r in rows if int(r.get("timestamp") or 0) >= int(variables["from"])]
        return httpx.Response(200, json={"data": {query_field: rows[skip:skip + first]}})


def aave_schema(required_user_arg=False):
    """Aave v3 style subgraph: borrows, repays and supplies on a Reserve"""

    def event_type(extra=()):
        return [
            field("id", non_null(scalar("ID"))),
            field("txHash", non_null(scalar("Bytes"))),
            field("action", non_null(enum("Action"))),
            field("user", non_null(obj("User"))),
            field("reserve", non_null(obj("Reserve"))),
            field("amount", non_null(scalar("BigInt"))),
            field("timestamp", non_null(scalar("Int"))),
            *extra,
        ]

    def event_filter():
        return [
            field("user", scalar("String")),
            field("user_in", list_of(non_null(scalar("String")))),
            field("reserve", scalar("String")),
            field("timestamp", scalar("Int")),
            field("timestamp_gte", scalar("Int")),
            field("timestamp_lt", scalar("Int")),
            field("user_", input_obj("User_filter")),
        ]

    def args(filter_type, order_enum):
        base = graph_args(filter_type, order_enum)
        if required_user_arg:
            base.insert(0, arg("user", non_null(scalar("String"))))
        return base

    root_fields = [
        collection("supplies", "Supply", args("Supply_filter", "Supply_orderBy")),
        collection("reserves", "Reserve", graph_args("Reserve_filter", "Reserve_orderBy")),
        collection("borrows", "Borrow", args("Borrow_filter", "Borrow_orderBy")),
        collection("repays", "Repay", args("Repay_filter", "Repay_orderBy")),
        {"name": "_meta", "type": obj("_Meta_"), "args": []},
    ]
    types = {
        "Supply": event_type(),
        "Borrow": event_type((field("amountUSD", scalar("BigDecimal")),)),
        "Repay": event_type(),
        "Reserve": [
            field("id", non_null(scalar("ID"))),
            field("symbol", non_null(scalar("String"))),
            field("underlyingAsset", non_null(scalar("Bytes"))),
            field("decimals", non_null(scalar("Int"))),
        ],
        "User": [field("id", non_null(scalar("ID")))],
    }
    input_types = {
        "Supply_filter": event_filter(),
        "Borrow_filter": event_filter(),
        "Repay_filter": event_filter(),
        "Reserve_filter": [field("symbol", scalar("String"))],
    }
    return root_fields, types, input_types


def compound_schema():
    """Single unified accountEvents collection with the asset on each event"""
    root_fields = [
        collection("accountEvents", "AccountEvent", [
            arg("where", input_obj("AccountEvent_filter")),
            arg("first", scalar("Int"), "100"),
            arg("skip", scalar("Int"), "0"),
        ]),
        collection("markets", "Market", graph_args("Market_filter", "Market_orderBy")),
    ]
    types = {
        "AccountEvent": [
            field("id", non_null(scalar("ID"))),
            field("timestamp", non_null(scalar("BigInt"))),
            field("eventType", non_null(enum("EventType"))),
            field("amount", non_null(scalar("BigInt"))),
            field("asset", non_null(obj("Token"))),
        ],
        "Token": [
            field("id", non_null(scalar("Bytes"))),
            field("symbol", non_null(scalar("String"))),
            field("decimals", non_null(scalar("Int"))),
        ],
    }
    input_types = {
        "AccountEvent_filter": [
            field("account", scalar("String")),
            field("timestamp_gte", scalar("BigInt")),
        ],
    }
    return root_fields, types, input_types


@pytest.fixture
def gql():
    """Type reference and schema builders for fake subgraphs"""
    return SimpleNamespace(
        scalar=scalar,
        enum=enum,
        obj=obj,
        input_obj=input_obj,
        non_null=non_null,
        list_of=list_of,
        field=field,
        arg=arg,
        collection=collection,
        graph_args=graph_args,
        aave_schema=aave_schema,
        compound_schema=compound_schema,
        FakeSubgraph=FakeSubgraph,
        AAVE_URL=AAVE_URL,
        COMPOUND_URL=COMPOUND_URL,
    )


@pytest.fixture
def test_settings(tmp_path):
    """Settings pointing at fake endpoints, independent of any .env file"""
    return Settings(
        _env_file=None,
        graph_api_key="",
        aave_subgraph_polygon=AAVE_URL,
        aave_subgraph_arbitrum="",
        compound_subgraph_arbitrum=COMPOUND_URL,
        compound_subgraph_base="",
        event_store_path=str(tmp_path / "events.db"),
    )


@pytest_asyncio.fixture
async def subgraph_client_for():
    """Factory: SubgraphClient whose requests are answered by a FakeSubgraph"""
    http_clients = []

    def make(fake):
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(fake.handler))
        http_clients.append(http_client)
        return SubgraphClient(http_client=http_client, retry_attempts=1)

    yield make
    for http_client in http_clients:
        await http_client.aclose()
