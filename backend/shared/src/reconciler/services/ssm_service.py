"""SSM Parameter Store access for Stripe and email collaborator secrets.

Parameters are SecureStrings under ``/giving/{environment}/...`` and are cached
for the lifetime of the process (one Lambda container).
"""

import logging
from functools import lru_cache
from typing import ClassVar

import boto3
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)


class SSMServiceError(Exception):
    """Raised when SSM parameter retrieval fails."""


class SSMService:
    """Cached reader for SSM Parameter Store.

    Usage:
        ssm = get_ssm_service()
        secret = ssm.get_parameter("/giving/dev/stripe/live/webhook_secret")
        maybe = ssm.get_optional_parameter("/giving/dev/stripe/test/webhook_secret")
    """

    _instance: ClassVar["SSMService | None"] = None
    _cache: ClassVar[dict[str, str]] = {}

    def __init__(self) -> None:
        self._client = boto3.client("ssm")

    @classmethod
    def get_instance(cls) -> "SSMService":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Drop the instance and cache (for testing only)."""
        cls._instance = None
        cls._cache.clear()

    def get_parameter(self, name: str, *, use_cache: bool = True) -> str:
        """Retrieve a decrypted parameter value.

        Args:
            name: Full parameter path
            use_cache: Whether to use cached value if available (default: True)

        Returns:
            The decrypted parameter value.

        Raises:
            SSMServiceError: If parameter cannot be retrieved.
        """
        if use_cache and name in self._cache:
            logger.debug("SSM cache hit for %s", name)
            return self._cache[name]

        try:
            logger.info("Fetching SSM parameter: %s", name)
            response = self._client.get_parameter(Name=name, WithDecryption=True)
            value: str = response["Parameter"]["Value"]
            self._cache[name] = value
            return value

        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "Unknown")
            if error_code == "ParameterNotFound":
                raise SSMServiceError(f"SSM parameter not found: {name}") from e
            if error_code == "AccessDeniedException":
                raise SSMServiceError(
                    f"Access denied to SSM parameter: {name}. "
                    "Check IAM permissions for ssm:GetParameter."
                ) from e
            raise SSMServiceError(
                f"Failed to retrieve SSM parameter {name}: {e}"
            ) from e

    def get_optional_parameter(self, name: str) -> str | None:
        """Like get_parameter, but a missing parameter yields None.

        Access and transport errors still raise SSMServiceError.
        """
        try:
            return self.get_parameter(name)
        except SSMServiceError as e:
            if isinstance(e.__cause__, ClientError) and (
                e.__cause__.response.get("Error", {}).get("Code") == "ParameterNotFound"
            ):
                logger.info("SSM parameter not configured: %s", name)
                return None
            raise


@lru_cache(maxsize=1)
def get_ssm_service() -> SSMService:
    """Get the shared SSMService instance."""
    return SSMService.get_instance()
