"""
kubeforge.models.providers

Unified aggregator import for:
- ProviderName
- The per-provider payload models (AWSSpec, ProviderPayload)
- PROVIDER_SPEC_MODELS, mapping ProviderName -> payload model
"""

from enum import Enum
from typing import Dict, Optional, Type

from kubeforge.models.providers.aws import AWSSpec
from kubeforge.models.providers.base import ProviderPayload


class ProviderName(str, Enum):
    aws = "aws"
    azure = "azure"
    digitalocean = "digitalocean"
    equinixmetal = "equinixmetal"
    gce = "gce"
    hetzner = "hetzner"
    openstack = "openstack"
    vsphere = "vsphere"


PROVIDER_SPEC_MODELS: Dict[ProviderName, Type[ProviderPayload]] = {
    ProviderName.aws: AWSSpec,
}


def payload_model_for(provider: Optional[ProviderName]) -> Type[ProviderPayload]:
    """Return the payload model for a provider, falling back to the untyped payload."""
    if provider is None:
        return ProviderPayload
    return PROVIDER_SPEC_MODELS.get(provider, ProviderPayload)


__all__ = [
    "ProviderName",
    "ProviderPayload",
    "AWSSpec",
    "PROVIDER_SPEC_MODELS",
    "payload_model_for",
]
