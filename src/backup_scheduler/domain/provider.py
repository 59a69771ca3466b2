import uuid
from datetime import datetime
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from .job import utcnow


class StorageProvider(BaseModel):
    """
    A configured storage destination. `config` holds the JSON credential bundle exactly as
    it was stored; it is only interpreted when a job runs.
    """
    id: str = Field(default_factory=lambda: f"sp_{uuid.uuid4().hex[:8]}", description="Unique provider identifier")
    name: str = Field(..., description="Display name, also used as the transfer-tool remote alias")
    type: str = Field(..., description="Provider kind: s3, b2 or storj")
    config: Optional[str] = Field(None, description="JSON encoded credentials")
    created_at: datetime = Field(default_factory=utcnow)


class _CredentialsBase(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    bucket: str = Field(..., min_length=1)


class S3Credentials(_CredentialsBase):
    type: Literal["s3"] = "s3"
    access_key_id: str = Field(..., min_length=1)
    secret_access_key: str = Field(..., min_length=1)
    region: Optional[str] = None
    endpoint: Optional[str] = None


class B2Credentials(_CredentialsBase):
    type: Literal["b2"] = "b2"
    application_key_id: str = Field(..., min_length=1)
    application_key: str = Field(..., min_length=1)


class StorjCredentials(_CredentialsBase):
    type: Literal["storj"] = "storj"
    access_key: str = Field(..., min_length=1)
    secret_key: str = Field(..., min_length=1)
    endpoint: str = "https://gateway.storjshare.io"
    acl: str = "private"


StorageCredentials = Annotated[
    Union[S3Credentials, B2Credentials, StorjCredentials],
    Field(discriminator="type"),
]

credentials_adapter: TypeAdapter = TypeAdapter(StorageCredentials)


def parse_credentials(provider_type: str, raw: Dict[str, Any]) -> Union[S3Credentials, B2Credentials, StorjCredentials]:
    """
    Validate a raw credential bundle against the provider type. Raises pydantic's
    ValidationError when a required field is missing or the type is unknown.
    """
    payload = dict(raw)
    payload["type"] = provider_type
    return credentials_adapter.validate_python(payload)


class ResolvedProvider(BaseModel):
    """
    A storage provider whose credentials have been validated and are ready to hand to the
    transfer tool.
    """
    id: str
    alias: str
    credentials: StorageCredentials

    @property
    def bucket(self) -> str:
        return self.credentials.bucket
