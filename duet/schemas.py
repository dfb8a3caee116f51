"""
Pydantic schemas mirroring the signaling and REST contract.
"""

from __future__ import annotations

from typing import Any, List, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, validator

from .protocol import MessageType, ProtocolError


class PairingRequestModel(BaseModel):
    user_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("userId", "user_id", "id"),
    )
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @validator("user_id", pre=True)
    def normalise_user_id(cls, value: object) -> Optional[str]:
        if value is None:
            return None
        result = str(value).strip()
        return result or None


class PairingResultModel(BaseModel):
    partner_id: str = Field(validation_alias=AliasChoices("partnerId", "partner_id", "partner"))
    initiator: bool = False
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @validator("partner_id", pre=True)
    def require_partner_id(cls, value: object) -> str:
        result = str(value or "").strip()
        if not result:
            raise ValueError("partnerId is required")
        return result


class IceServerModel(BaseModel):
    urls: Union[str, List[str]]
    username: Optional[str] = None
    credential: Optional[str] = None

    @validator("urls", pre=True)
    def require_urls(cls, value: Any) -> Union[str, List[str]]:
        if isinstance(value, str) and value.strip():
            return value.strip()
        if isinstance(value, (list, tuple)):
            urls = [str(item).strip() for item in value if str(item).strip()]
            if urls:
                return urls
        raise ValueError("urls must be a non-empty string or list")

    def url_list(self) -> List[str]:
        return [self.urls] if isinstance(self.urls, str) else list(self.urls)


class IceServerCollection(BaseModel):
    ice_servers: List[IceServerModel] = Field(
        default_factory=list,
        validation_alias=AliasChoices("iceServers", "ice_servers"),
        serialization_alias="iceServers",
    )
    model_config = ConfigDict(populate_by_name=True)


class CoordinatorStatsModel(BaseModel):
    connected: int = 0
    waiting: int = 0
    paired: int = 0
    policy: str = "single-slot"


def parse_pairing_request(message: dict) -> PairingRequestModel:
    try:
        return PairingRequestModel.model_validate(message)
    except ValidationError as exc:
        raise ProtocolError(f"invalid {MessageType.PAIRING_REQUEST.value}: {exc}") from exc


def parse_pairing_result(message: dict) -> PairingResultModel:
    try:
        return PairingResultModel.model_validate(message)
    except ValidationError as exc:
        raise ProtocolError(f"invalid {MessageType.PAIRING_RESULT.value}: {exc}") from exc


def parse_ice_servers(payload: Any) -> List[IceServerModel]:
    """
    Accept either a bare list of descriptors or ``{"iceServers": [...]}``.
    """

    try:
        if isinstance(payload, list):
            return [IceServerModel.model_validate(item) for item in payload]
        return IceServerCollection.model_validate(payload).ice_servers
    except ValidationError as exc:
        raise ProtocolError(f"invalid ice server list: {exc}") from exc

