from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from portcullis.service import api_keys
from portcullis.service.errors import ValidationError
from portcullis.storage.models import ApiKeyRecord

_VALID_ERROR_CODES = {
    "validation_error",
    "unauthorized",
    "forbidden",
    "not_found",
    "conflict",
    "rate_limited",
    "server_error",
}


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _as_value_error(normalizer: Callable[[Any], Any], value: Any) -> Any:
    # pydantic only reports ValueError as a field error
    try:
        return normalizer(value)
    except ValidationError as exc:
        raise ValueError(exc.message) from exc


class CreateApiKeyRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., max_length=api_keys.NAME_MAX_LENGTH * 2)
    permissions: Optional[List[str]] = Field(default=None, max_length=len(api_keys.VALID_PERMISSIONS) * 2)
    expires_in: Optional[int] = Field(default=None, description="Seconds until expiry")
    ip_allowlist: Optional[List[str]] = Field(default=None, max_length=100)

    @field_validator("name")
    @classmethod
    def _name(cls, value: str) -> str:
        return _as_value_error(api_keys.normalize_name, value)

    @field_validator("permissions")
    @classmethod
    def _permissions(cls, value: Optional[List[str]]) -> List[str]:
        return _as_value_error(api_keys.normalize_permissions, value)

    @field_validator("expires_in")
    @classmethod
    def _expires_in(cls, value: Optional[int]) -> Optional[int]:
        return _as_value_error(api_keys.normalize_expires_in, value)

    @field_validator("ip_allowlist")
    @classmethod
    def _ip_allowlist(cls, value: Optional[List[str]]) -> List[str]:
        return _as_value_error(api_keys.normalize_ip_allowlist, value)


class UpdateApiKeyRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    permissions: List[str]

    @field_validator("permissions")
    @classmethod
    def _permissions(cls, value: List[str]) -> List[str]:
        return _as_value_error(api_keys.normalize_permissions, value)


class ApiKeyView(BaseModel):
    id: str
    name: str
    key_prefix: str
    masked_key: str
    permissions: List[str]
    is_active: bool
    expires_at: Optional[datetime] = None
    ip_allowlist: List[str] = Field(default_factory=list)
    request_count: int = 0
    last_used_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record: ApiKeyRecord) -> "ApiKeyView":
        view = record.public_view()
        view.pop("user_id", None)
        return cls(masked_key=api_keys.mask_key(record), **view)


class ApiKeyCreatedResponse(BaseModel):
    key: str = Field(..., description="Plaintext key; shown only in this response")
    api_key: ApiKeyView
    warning: str = "Store this key securely. It will not be shown again."


class ApiKeyListResponse(BaseModel):
    items: List[ApiKeyView]
    total: int


class CleanupResponse(BaseModel):
    deactivated: int


class PrincipalResponse(BaseModel):
    id: str
    credential: str
    role: str
    permissions: List[str]
    key_id: Optional[str] = None
