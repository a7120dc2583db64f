"""
Credential descriptors.

A session authenticates with exactly one of two variants. The variant is
chosen once, by whoever resolves the tenant's credentials, and is carried as
an explicit ``kind`` tag from then on.
"""

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, SecretStr, TypeAdapter


class CertificateCredentials(BaseModel):
    """App registration + certificate thumbprint. Never prompts."""

    kind: Literal["certificate"] = "certificate"
    app_id: str
    certificate_thumbprint: str
    tenant_directory_id: str

    def describe(self) -> str:
        return f"certificate app={self.app_id} directory={self.tenant_directory_id}"


class InteractiveCredentials(BaseModel):
    """Username + secret. Sign-in may require a second factor."""

    kind: Literal["interactive"] = "interactive"
    username: str
    secret: SecretStr

    def describe(self) -> str:
        return f"interactive user={self.username}"


CredentialDescriptor = Annotated[
    Union[CertificateCredentials, InteractiveCredentials],
    Field(discriminator="kind"),
]

_adapter: TypeAdapter = TypeAdapter(CredentialDescriptor)


def parse_descriptor(data: dict[str, Any]) -> Union[CertificateCredentials, InteractiveCredentials]:
    """Validate a raw mapping into a descriptor. ``kind`` is required."""
    return _adapter.validate_python(data)
