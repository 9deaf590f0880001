"""Request bodies accepted by the HTTP API."""

from pydantic import BaseModel, Field

from mr_cert.lib.config import DistinguishedName, KeyParameters


class SignerModel(BaseModel):
    """Bundle that signs, or anchors, a new certificate."""

    type: str
    name: str


class NewCertRequest(BaseModel):
    """Fields shared by every request that creates a new key."""

    name: str
    key_length: int = Field(default=2048, gt=0)
    digest: str = "sha256"
    lifetime: int = Field(gt=0, description="Validity in days")
    common_name: str
    country: str
    state: str
    locality: str
    organization: str
    organizational_unit: str = ""
    email_address: str = ""

    def key_parameters(self) -> KeyParameters:
        return KeyParameters(
            lifetime_days=self.lifetime, key_length=self.key_length, digest=self.digest
        )

    def distinguished_name(self) -> DistinguishedName:
        return DistinguishedName(
            common_name=self.common_name,
            country=self.country,
            state=self.state,
            locality=self.locality,
            organization=self.organization,
            organizational_unit=self.organizational_unit,
            email_address=self.email_address,
        )


class RootCertRequest(NewCertRequest):
    intermediate_only: bool = False


class IntermediateCertRequest(NewCertRequest):
    signer: SignerModel


class LeafCertRequest(NewCertRequest):
    signer: SignerModel
    domain_names: list[str] = Field(default_factory=list)


class CsrSignRequest(BaseModel):
    """A CSR to sign; the requester keeps the private key."""

    name: str
    signer: SignerModel
    digest: str = "sha256"
    lifetime: int = Field(gt=0, description="Validity in days")
    csr_contents: str


class RootUploadRequest(BaseModel):
    """An existing self-signed certificate to import."""

    name: str
    cert_contents: str
    key_contents: str | None = None
    intermediate_only: bool = False


class SignedUploadRequest(RootUploadRequest):
    """An existing certificate to import, verified against its signer."""

    signer: SignerModel
