from outpost.embedded.container import (
    EmbeddedTransport,
    TransportState,
    default_client_factory,
    merge,
)
from outpost.embedded.variants import (
    KubernetesVariant,
    NomadVariant,
    SSHVariant,
    Variant,
)

__all__ = [
    "EmbeddedTransport",
    "KubernetesVariant",
    "NomadVariant",
    "SSHVariant",
    "TransportState",
    "Variant",
    "default_client_factory",
    "merge",
]
