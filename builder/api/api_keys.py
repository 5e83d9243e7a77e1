"""Stored credential and connector endpoints."""

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, Field

from builder.api.errors import SERVICE_ERRORS, http_error
from builder.core.auth import get_current_user_id
from builder.models import ApiProvider
from builder.services import ConnectorService, CredentialService

router = APIRouter()


class ApiKeyUpdate(BaseModel):
    api_key: str = Field(min_length=1)


class ApiKeysResponse(BaseModel):
    providers: list[ApiProvider]


class ConnectorCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None
    mode: str = "remote"
    base_url: str | None = None
    command: str | None = None
    oauth_client_id: str | None = None
    oauth_client_secret: str | None = None
    env: dict[str, str] | None = None


class ConnectorResponse(BaseModel):
    id: str
    name: str
    description: str | None
    mode: str
    base_url: str | None
    command: str | None
    status: str


@router.get("/api-keys", response_model=ApiKeysResponse)
def list_api_keys(user_id: str = Depends(get_current_user_id)):
    """Providers the caller has stored keys for. Values are never returned."""
    return ApiKeysResponse(providers=CredentialService.list_providers(user_id))


@router.put("/api-keys/{provider}", status_code=status.HTTP_204_NO_CONTENT)
def save_api_key(
    provider: ApiProvider, body: ApiKeyUpdate, user_id: str = Depends(get_current_user_id)
):
    CredentialService.save_key(user_id, provider, body.api_key.strip())
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete("/api-keys/{provider}", status_code=status.HTTP_204_NO_CONTENT)
def delete_api_key(provider: ApiProvider, user_id: str = Depends(get_current_user_id)):
    try:
        CredentialService.delete_key(user_id, provider)
    except SERVICE_ERRORS as e:
        raise http_error(e) from e
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/connectors", response_model=ConnectorResponse, status_code=status.HTTP_201_CREATED
)
def create_connector(body: ConnectorCreate, user_id: str = Depends(get_current_user_id)):
    """Register a tool server that tasks can attach by id."""
    try:
        connector = ConnectorService.create_connector(
            user_id=user_id,
            name=body.name,
            mode=body.mode,
            base_url=body.base_url,
            command=body.command,
            description=body.description,
            oauth_client_id=body.oauth_client_id,
            oauth_client_secret=body.oauth_client_secret,
            env=body.env,
        )
    except SERVICE_ERRORS as e:
        raise http_error(e) from e
    return ConnectorResponse.model_validate(connector, from_attributes=True)
