"""AWS client management and session handling."""

import threading
import boto3
from botocore.config import Config
from botocore.exceptions import ClientError, NoCredentialsError, PartialCredentialsError
from typing import Optional, Dict, Any
from dataclasses import dataclass
from s3nfs_deploy.utils.errors import CredentialError, error_handler
from s3nfs_deploy.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class AWSCredentials:
    """AWS credential information."""
    account_id: str
    user_arn: str
    region: str
    profile: Optional[str] = None


class AWSClientManager:
    """Manages a boto3 session and a cache of thread-safe service clients."""

    def __init__(
        self,
        profile: Optional[str] = None,
        region: Optional[str] = None,
        max_pool_connections: int = 20
    ):
        """Initialize AWS client manager.

        Args:
            profile: AWS profile name to use
            region: AWS region to use
            max_pool_connections: Maximum number of connections in the connection pool
        """
        self.profile = profile
        self.region = region
        self._session: Optional[boto3.Session] = None
        self._clients: Dict[str, Any] = {}
        self._credentials: Optional[AWSCredentials] = None
        self._lock = threading.Lock()

        # Retries are owned by RetryStrategy so attempt counts stay exact
        self._boto_config = Config(
            max_pool_connections=max_pool_connections,
            retries={'mode': 'standard', 'max_attempts': 1},
            connect_timeout=10,
            read_timeout=60
        )

    @property
    def session(self) -> boto3.Session:
        """Get or create boto3 session."""
        with self._lock:
            if self._session is None:
                kwargs = {}
                if self.profile:
                    kwargs['profile_name'] = self.profile
                if self.region:
                    kwargs['region_name'] = self.region

                self._session = boto3.Session(**kwargs)
                logger.info(f"Created AWS session - Region: {self._session.region_name}, "
                            f"Profile: {self.profile or 'default'}")

            return self._session

    def get_client(self, service_name: str):
        """Get a cached boto3 client for a service.

        Sessions are not thread-safe but clients are, so clients are created
        under a lock and then shared by worker threads.

        Args:
            service_name: AWS service name (e.g., 'ec2', 'storagegateway')

        Returns:
            Boto3 client for the service
        """
        session = self.session
        with self._lock:
            if service_name not in self._clients:
                self._clients[service_name] = session.client(
                    service_name, config=self._boto_config
                )
                logger.debug(f"Created {service_name} client")
            return self._clients[service_name]

    def validate_credentials(self) -> AWSCredentials:
        """Validate AWS credentials and return credential information.

        Raises:
            CredentialError: If credentials are missing, incomplete or rejected
        """
        if self._credentials is not None:
            return self._credentials

        try:
            identity = self.get_client('sts').get_caller_identity()
        except (NoCredentialsError, PartialCredentialsError) as e:
            raise error_handler.handle_exception(e) from e
        except ClientError as e:
            raise CredentialError(
                f"Failed to validate AWS credentials: {error_handler.error_code(e)}",
                cause=e,
                suggestions=['Verify credentials using: aws sts get-caller-identity']
            ) from e

        self._credentials = AWSCredentials(
            account_id=identity['Account'],
            user_arn=identity['Arn'],
            region=self.session.region_name,
            profile=self.profile
        )
        logger.info(f"AWS credentials validated - Account: {self._credentials.account_id}, "
                    f"Region: {self._credentials.region}")
        return self._credentials
