from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

DIRECT_REFERRER = "direct"


class ResourceRef(BaseModel):
    account_id: str = Field(min_length=1, max_length=128)
    bucket: str = Field(min_length=1, max_length=255)
    path: str = ""
    filename: str = Field(min_length=1, max_length=1024)

    @property
    def object_key(self) -> str:
        return self.path or self.filename


class ObjectMetadata(BaseModel):
    filename: str
    content_type: str
    size: int


class SharedLink(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    token: str
    owner_account_id: str
    bucket: str
    path: str
    filename: str
    content_type: str | None = None
    size: int
    allow_download: bool = True
    issued_at: datetime
    expires_at: datetime
    revoked_at: datetime | None = None
    password_hash: str | None = Field(default=None, exclude=True, repr=False)

    @property
    def password_protected(self) -> bool:
        return self.password_hash is not None

    def resource_ref(self) -> ResourceRef:
        return ResourceRef(
            account_id=self.owner_account_id,
            bucket=self.bucket,
            path=self.path,
            filename=self.filename,
        )


class LinkState(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


class GeoLocation(BaseModel):
    model_config = ConfigDict(frozen=True)

    country: str | None = None
    city: str | None = None


class AccessStatus(str, Enum):
    GRANTED = "granted"
    EXPIRED = "expired"
    REVOKED = "revoked"
    DOWNLOAD_BLOCKED = "download_blocked"
    PASSWORD_REJECTED = "password_rejected"


class AccessEventInput(BaseModel):
    ip_address: str = ""
    user_agent: str = ""
    referrer: str = DIRECT_REFERRER
    geo: GeoLocation = Field(default_factory=GeoLocation)
    is_download: bool = False
    status: AccessStatus = AccessStatus.GRANTED

    @field_validator("referrer", mode="before")
    @classmethod
    def _default_referrer(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return DIRECT_REFERRER
        return value


class AccessEvent(AccessEventInput):
    model_config = ConfigDict(frozen=True)

    id: int
    resource_key: int
    occurred_at: datetime


class AccessStats(BaseModel):
    view_count: int
    download_count: int
    unique_visitors: int
    denied_count: int
    by_country: dict[str, int]
    by_referrer: dict[str, int]
    first_access_at: datetime | None = None
    last_access_at: datetime | None = None


class AdminAction(str, Enum):
    UPDATE_USER = "update_user"
    DELETE_ACCOUNT = "delete_account"
    MODIFY_SUBSCRIPTION = "modify_subscription"
    OTHER = "other"


DetailValue = str | int | float | bool | None


class UpdateUserDetails(BaseModel):
    kind: Literal["update_user"] = "update_user"
    changes: dict[str, DetailValue] = Field(default_factory=dict)
    reason: str | None = None


class DeleteAccountDetails(BaseModel):
    kind: Literal["delete_account"] = "delete_account"
    account_id: str
    reason: str | None = None


class ModifySubscriptionDetails(BaseModel):
    kind: Literal["modify_subscription"] = "modify_subscription"
    previous_plan: str | None = None
    new_plan: str
    reason: str | None = None


class OtherDetails(BaseModel):
    kind: Literal["other"] = "other"
    label: str
    fields: dict[str, Any] = Field(default_factory=dict)


class LegacyDetails(BaseModel):
    """Payload of an entry written before details were structured."""

    kind: Literal["legacy"] = "legacy"
    raw: str


AdminDetails = Annotated[
    Union[
        UpdateUserDetails,
        DeleteAccountDetails,
        ModifySubscriptionDetails,
        OtherDetails,
        LegacyDetails,
    ],
    Field(discriminator="kind"),
]


class AdminLogInput(BaseModel):
    admin_id: str = Field(min_length=1, max_length=128)
    admin_username: str = Field(min_length=1, max_length=255)
    target_user_id: str | None = None
    target_username: str | None = None
    action: AdminAction
    details: AdminDetails
    ip_address: str | None = None


class AdminLogEntry(AdminLogInput):
    model_config = ConfigDict(frozen=True)

    id: int
    created_at: datetime


class AuditFilter(BaseModel):
    admin_id: str | None = None
    target_user_id: str | None = None
    action: AdminAction | None = None
    since: datetime | None = None
    until: datetime | None = None
    limit: int | None = Field(default=None, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)


class CreateShareRequest(ResourceRef):
    content_type: str | None = None
    size: int | None = Field(default=None, ge=0)
    # Checked by compute_expiry so every bad value reports the allowed range.
    expires_in_days: Any
    allow_download: bool = True
    password: str | None = Field(default=None, max_length=256)


class RevokeRequest(BaseModel):
    owner_id: str = Field(min_length=1, max_length=128)


class SharedLinkResponse(BaseModel):
    id: int
    token: str
    owner_account_id: str
    bucket: str
    path: str
    filename: str
    content_type: str | None
    size: int
    allow_download: bool
    issued_at: datetime
    expires_at: datetime
    revoked_at: datetime | None
    password_protected: bool
    is_active: bool
    share_url: str


class SharedLinkSummary(SharedLinkResponse):
    access_count: int


class SharedLinkListResponse(BaseModel):
    links: list[SharedLinkSummary]


class SharedFileView(BaseModel):
    filename: str
    content_type: str | None
    size: int
    allow_download: bool
    expires_at: datetime
    download_url: str | None


class AccessLogResponse(BaseModel):
    link_id: int
    events: list[AccessEvent]


class AccessStatsResponse(AccessStats):
    link_id: int


class AdminLogListResponse(BaseModel):
    entries: list[AdminLogEntry]
