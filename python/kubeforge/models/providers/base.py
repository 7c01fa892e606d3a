"""
kubeforge/models/providers/base.py

Base model for per-provider machine payloads.
"""

from pydantic import BaseModel, ConfigDict


class ProviderPayload(BaseModel):
    """
    A provider payload decoded from the pool's cloud_provider_spec.

    Unknown keys are kept as extras so re-encoding does not lose anything the
    machine controller understands but kubeforge does not.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)
