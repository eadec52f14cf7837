import json
import boto3
from botocore.exceptions import ClientError
from infra_over_http.config import settings
from typing import Any, Dict, List, Optional
import logging

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "terraform.tfstate"


class S3StateStore:
    """
    Read-only view of Terraform remote state in S3.

    The S3 backend keeps each non-default workspace at
    <workspace_key_prefix>/<workspace>/<key>; the namespace is used as prefix.
    """

    def __init__(self, s3_client=None, bucket_name: Optional[str] = None):
        if s3_client is None:
            if not all([settings.aws_access_key_id, settings.aws_secret_access_key, settings.s3_bucket_name]):
                raise ValueError("AWS S3 credentials and bucket name must be configured")
            s3_client = boto3.client(
                's3',
                aws_access_key_id=settings.aws_access_key_id,
                aws_secret_access_key=settings.aws_secret_access_key,
                region_name=settings.aws_region
            )
        self.s3_client = s3_client
        self.bucket_name = bucket_name or settings.s3_bucket_name
        self.region = settings.aws_region

    @staticmethod
    def state_key(namespace: str, deployment_id: str) -> str:
        return f"{namespace}/{deployment_id}/{STATE_FILE_NAME}"

    def state_exists(self, namespace: str, deployment_id: str) -> bool:
        """Check if the deployment's state file exists in S3"""
        try:
            self.s3_client.head_object(Bucket=self.bucket_name, Key=self.state_key(namespace, deployment_id))
            return True
        except ClientError as e:
            if e.response['Error']['Code'] in ('404', 'NoSuchKey', 'NotFound'):
                return False
            logger.error(f"Error checking state for {deployment_id}: {str(e)}")
            raise

    def list_deployments(self, namespace: str) -> List[str]:
        """List workspace names under the namespace prefix, in S3 key order"""
        paginator = self.s3_client.get_paginator('list_objects_v2')
        prefix = f"{namespace}/"
        deployment_ids = []
        for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix, Delimiter='/'):
            for common_prefix in page.get('CommonPrefixes', []):
                name = common_prefix['Prefix'][len(prefix):].rstrip('/')
                if name:
                    deployment_ids.append(name)
        return deployment_ids

    def read_outputs(self, namespace: str, deployment_id: str) -> Dict[str, Any]:
        """Return the raw 'outputs' block of the deployment's state"""
        try:
            response = self.s3_client.get_object(
                Bucket=self.bucket_name, Key=self.state_key(namespace, deployment_id)
            )
        except ClientError as e:
            if e.response['Error']['Code'] in ('404', 'NoSuchKey', 'NotFound'):
                return {}
            raise
        body = response['Body'].read()
        if not body:
            return {}
        state = json.loads(body)
        return state.get('outputs') or {}

    def ensure_bucket(self) -> None:
        """Ensure S3 bucket exists, create if it doesn't"""
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            logger.info(f"S3 bucket {self.bucket_name} exists")
        except ClientError:
            try:
                if self.region == 'us-east-1':
                    self.s3_client.create_bucket(Bucket=self.bucket_name)
                else:
                    self.s3_client.create_bucket(
                        Bucket=self.bucket_name,
                        CreateBucketConfiguration={'LocationConstraint': self.region}
                    )
                logger.info(f"Created S3 bucket {self.bucket_name}")
            except ClientError as e:
                logger.error(f"Failed to create S3 bucket: {str(e)}")
                raise
