"""AWS session handling for the deployment pipeline."""

import logging
from typing import Optional

import boto3

from .config import CONFIG

logger = logging.getLogger(__name__)


class AwsContext:
    """Holds the active boto3 session every pipeline client is created from.

    The session starts from the default credential chain (or a named profile)
    and is replaced when the deployment role is assumed.
    """

    def __init__(self, region: Optional[str] = None, profile: Optional[str] = None,
                 session: Optional[boto3.Session] = None):
        self.region = region or CONFIG['aws_region']
        self.profile = profile

        if session is not None:
            self.session = session
        elif profile:
            logger.info(f"Using AWS profile: {profile}")
            self.session = boto3.Session(profile_name=profile, region_name=self.region)
        else:
            logger.info("Using default AWS credentials chain")
            self.session = boto3.Session(region_name=self.region)

    def client(self, service_name: str):
        """Create a client for the active session in the pipeline region."""
        return self.session.client(service_name, region_name=self.region)

    def install_session(self, session: boto3.Session) -> None:
        """Make ``session`` the credential context for all later clients."""
        self.session = session
