"""
Subgraph endpoint resolution per (protocol family, chain).
"""

from enum import Enum
from typing import Dict, Optional, Tuple

from lending_history.core.config import Settings, settings as default_settings
from lending_history.core.errors import MissingEndpointConfigError


class ProtocolFamily(str, Enum):
    AAVE = "aave"          # several event collections (borrows, repays, ...)
    COMPOUND = "compound"  # one unified account events collection


SUPPORTED_CHAINS: Dict[ProtocolFamily, Tuple[str, ...]] = {
    ProtocolFamily.AAVE: ("polygon", "arbitrum"),
    ProtocolFamily.COMPOUND: ("arbitrum", "base"),
}

CHAIN_ALIASES = {
    "arbitrum-one": "arbitrum",
    "arb": "arbitrum",
    "matic": "polygon",
    "polygon-pos": "polygon",
}

# Settings attribute holding the URL for each (family, chain)
ENDPOINT_SETTINGS = {
    (ProtocolFamily.AAVE, "polygon"): "aave_subgraph_polygon",
    (ProtocolFamily.AAVE, "arbitrum"): "aave_subgraph_arbitrum",
    (ProtocolFamily.COMPOUND, "arbitrum"): "compound_subgraph_arbitrum",
    (ProtocolFamily.COMPOUND, "base"): "compound_subgraph_base",
}


def parse_protocol(value) -> Optional[ProtocolFamily]:
    if isinstance(value, ProtocolFamily):
        return value
    if not value:
        return None
    try:
        return ProtocolFamily(str(value).strip().lower())
    except ValueError:
        return None


def parse_chain(family: ProtocolFamily, value: Optional[str]) -> Optional[str]:
    """Normalize a chain name and check it is supported for the family"""
    if not value:
        return None
    chain = value.strip().lower()
    chain = CHAIN_ALIASES.get(chain, chain)
    return chain if chain in SUPPORTED_CHAINS.get(family, ()) else None


def resolve_endpoint(protocol, chain: str, config: Optional[Settings] = None) -> str:
    """
    Return the subgraph URL for a protocol family and chain.

    Raises:
        MissingEndpointConfigError: unknown protocol/chain or no URL configured
    """
    config = config or default_settings
    family = parse_protocol(protocol)
    parsed_chain = parse_chain(family, chain) if family else None
    if not family or not parsed_chain:
        raise MissingEndpointConfigError(str(protocol), str(chain))

    url = getattr(config, ENDPOINT_SETTINGS[(family, parsed_chain)], "") or ""
    url = url.strip()
    if not url:
        raise MissingEndpointConfigError(family.value, parsed_chain)

    if "{api_key}" in url:
        if not config.graph_api_key:
            raise MissingEndpointConfigError(family.value, parsed_chain)
        url = url.replace("{api_key}", config.graph_api_key)
    return url
