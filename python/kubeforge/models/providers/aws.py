"""
kubeforge/models/providers/aws.py

Typed view of the AWS machine payload. Only the fields kubeforge reads or
writes are declared; everything else is carried through untouched.
"""

from typing import Dict, Optional

from pydantic import Field

from kubeforge.models.providers.base import ProviderPayload


class AWSSpec(ProviderPayload):
    """
    AWS cloudProviderSpec. `tags` is rewritten during MachineDeployment
    generation to carry the cluster ownership tag.
    """

    tags: Optional[Dict[str, str]] = Field(default=None)
