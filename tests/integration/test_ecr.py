"""Integration tests for the ECR credential exchange.

boto3 is mocked, so no AWS credentials or network access are needed.
"""

from __future__ import annotations

import base64
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from ecr_deploy.errors import AuthError
from ecr_deploy.pipeline.ecr import EcrTokenExchange


def _token_response(token: str) -> dict:
    return {"authorizationData": [{"authorizationToken": token, "proxyEndpoint": "https://x"}]}


@pytest.fixture
def ecr_client() -> MagicMock:
    client = MagicMock()
    client.get_authorization_token.return_value = _token_response(
        base64.b64encode(b"AWS:registry-password").decode()
    )
    return client


@pytest.mark.asyncio
async def test_returns_decoded_password(ecr_client: MagicMock) -> None:
    with patch("boto3.client", return_value=ecr_client) as create:
        password = await EcrTokenExchange().get_login_password("AKIA", "secret", "eu-west-1")

    assert password == "registry-password"
    create.assert_called_once_with(
        "ecr",
        region_name="eu-west-1",
        aws_access_key_id="AKIA",
        aws_secret_access_key="secret",
    )


@pytest.mark.asyncio
async def test_empty_token_returns_empty_password(ecr_client: MagicMock) -> None:
    ecr_client.get_authorization_token.return_value = {"authorizationData": []}
    with patch("boto3.client", return_value=ecr_client):
        password = await EcrTokenExchange().get_login_password("AKIA", "secret", "us-east-1")

    assert password == ""


@pytest.mark.asyncio
async def test_rejected_exchange_raises_auth_error(ecr_client: MagicMock) -> None:
    ecr_client.get_authorization_token.side_effect = ClientError(
        {"Error": {"Code": "UnrecognizedClientException", "Message": "bad key"}},
        "GetAuthorizationToken",
    )
    with patch("boto3.client", return_value=ecr_client):
        with pytest.raises(AuthError, match="UnrecognizedClientException") as exc_info:
            await EcrTokenExchange().get_login_password("AKIA", "secret", "us-east-1")

    assert exc_info.value.exit_code == 4


@pytest.mark.asyncio
async def test_unreachable_region_raises_auth_error(ecr_client: MagicMock) -> None:
    ecr_client.get_authorization_token.side_effect = EndpointConnectionError(
        endpoint_url="https://api.ecr.nowhere.amazonaws.com"
    )
    with patch("boto3.client", return_value=ecr_client):
        with pytest.raises(AuthError, match="nowhere") as exc_info:
            await EcrTokenExchange().get_login_password("AKIA", "secret", "nowhere")

    assert exc_info.value.hint


@pytest.mark.asyncio
async def test_malformed_token_raises_auth_error(ecr_client: MagicMock) -> None:
    ecr_client.get_authorization_token.return_value = _token_response("!!!not-base64!!!")
    with patch("boto3.client", return_value=ecr_client):
        with pytest.raises(AuthError, match="malformed"):
            await EcrTokenExchange().get_login_password("AKIA", "secret", "us-east-1")
