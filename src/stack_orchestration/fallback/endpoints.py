"""
Public endpoints that can stand in for local services.
"""

from typing import Dict, Optional

from stack_orchestration.profiles.loader import ProfileCatalog

PUBLIC_ENDPOINTS: Dict[str, Dict[str, str]] = {
    "kaspa-node": {
        "KASPA_NODE_RPC_URL": "https://api.kaspa.org",
        "KASPA_NODE_GRPC_URL": "grpc://api.kaspa.org:16110",
    },
    "kasia-indexer": {"KASIA_INDEXER_URL": "https://api.kasia.io"},
    "k-indexer": {"K_SOCIAL_INDEXER_URL": "https://api.k-social.io"},
    "simply-kaspa-indexer": {"SIMPLY_KASPA_INDEXER_URL": "https://api.simplykaspa.io"},
}

# Extra flags set while the local node is bypassed.
NODE_FALLBACK_FLAGS = {"USE_PUBLIC_KASPA_NODE": True, "LOCAL_NODE_ENABLED": False}


def endpoints_for(service_name: str, catalog: ProfileCatalog,
                  table: Optional[Dict[str, Dict[str, str]]] = None) -> Dict[str, str]:
    """Alternate endpoints for a service, following the services it stands in for."""
    table = PUBLIC_ENDPOINTS if table is None else table
    if service_name in table:
        return dict(table[service_name])
    descriptor = catalog.get_service(service_name)
    if descriptor is not None:
        for alias in descriptor.provides:
            if alias in table:
                return dict(table[alias])
    return {}


def is_node_service(service_name: str, catalog: ProfileCatalog) -> bool:
    descriptor = catalog.get_service(service_name)
    return descriptor is not None and descriptor.satisfies("kaspa-node")
