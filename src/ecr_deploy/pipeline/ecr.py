"""AWS ECR credential exchange.

Trades an access key pair for the short-lived registry password that
``docker login`` accepts, using the ECR ``GetAuthorizationToken`` API. The
returned token is the base64 encoding of ``AWS:<password>``.

Example usage:
    >>> exchange = EcrTokenExchange()
    >>> password = await exchange.get_login_password("AKIA...", "secret", "us-east-1")
"""

from __future__ import annotations

import asyncio
import base64
import binascii
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ecr_deploy.errors import AuthError
from ecr_deploy.logging import get_logger


class EcrTokenExchange:
    """Exchanges AWS credentials for ECR login passwords.

    Attributes:
        logger: Structured logger instance
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)

    def _create_client(self, access_key_id: str, secret_access_key: str, region: str) -> Any:
        return boto3.client(
            "ecr",
            region_name=region,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
        )

    def _fetch_token(self, access_key_id: str, secret_access_key: str, region: str) -> str:
        client = self._create_client(access_key_id, secret_access_key, region)
        response: dict[str, Any] = client.get_authorization_token()
        data = response.get("authorizationData") or []
        if not data:
            return ""
        return str(data[0].get("authorizationToken") or "")

    async def get_login_password(
        self,
        access_key_id: str,
        secret_access_key: str,
        region: str,
    ) -> str:
        """Return the registry password for the given credentials and region.

        Args:
            access_key_id: AWS access key ID
            secret_access_key: AWS secret access key
            region: AWS region of the registry

        Returns:
            Password to pass to ``docker login --username AWS``; empty when
            the service returned no token

        Raises:
            AuthError: If the exchange is rejected or the token is malformed
        """
        self.logger.debug("ecr_token_requested", region=region)

        try:
            encoded = await asyncio.to_thread(
                self._fetch_token, access_key_id, secret_access_key, region
            )
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "Unknown")
            self.logger.error("ecr_token_rejected", region=region, error_code=code)
            raise AuthError(
                f"ECR rejected the credential exchange in {region}: {code}",
                hint="Check that the access key is active and allowed to call ecr:GetAuthorizationToken.",
            ) from e
        except BotoCoreError as e:
            self.logger.error(
                "ecr_token_error",
                region=region,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise AuthError(
                f"Unable to reach ECR in region '{region}': {e}",
                hint="The region is taken from the fourth dot-separated part of the registry host.",
            ) from e

        if not encoded:
            return ""

        try:
            decoded = base64.b64decode(encoded).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise AuthError(f"ECR returned a malformed authorization token in {region}") from e

        _, _, password = decoded.partition(":")
        return password
