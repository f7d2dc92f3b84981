from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class AuthScheme(str, Enum):
    BEARER = "bearer"
    KEY_SECRET = "key_secret"
    NONE = "none"


class ProviderConfig(BaseModel):
    """One candidate upload backend, loaded once at startup."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    endpoint: str = Field(..., min_length=1)
    auth_scheme: AuthScheme = AuthScheme.NONE
    token: Optional[str] = Field(default=None, repr=False)
    key: Optional[str] = Field(default=None, repr=False)
    secret: Optional[str] = Field(default=None, repr=False)
    priority: int = 0
    cid_field: Optional[str] = None
    file_field: str = "file"
    timeout: Optional[float] = None

    @model_validator(mode="after")
    def _check_credentials(self):
        if self.auth_scheme == AuthScheme.BEARER and not self.token:
            raise ValueError(f"provider '{self.name}': bearer auth requires 'token'")
        if self.auth_scheme == AuthScheme.KEY_SECRET and not (self.key and self.secret):
            raise ValueError(f"provider '{self.name}': key_secret auth requires 'key' and 'secret'")
        return self
