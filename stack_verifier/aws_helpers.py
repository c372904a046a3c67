"""
Thin boto3 wrappers used by the stack verifier

Each helper method maps to a single CloudFormation, S3 or Lambda operation.
"""
import logging
import time
from typing import Any, Callable, Dict, List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError, BotoCoreError

from .errors import StackVerifierError
from .models import StackStatus, LambdaFunction

logger = logging.getLogger(__name__)

STACK_NAME_TAG = "aws:cloudformation:stack-name"
BUCKET_NOT_FOUND_CODES = ("404", "NoSuchBucket", "NotFound")
S3_DELETE_BATCH_SIZE = 1000


class AWSHelperError(StackVerifierError):
    """Raised when an AWS call fails for a reason the helpers do not handle"""
    pass


def format_aws_error(error: Exception, service: str) -> str:
    """
    Format an AWS SDK error for a failure report

    Args:
        error: ClientError or BotoCoreError from boto3
        service: AWS service name

    Returns:
        Readable error message
    """
    if not isinstance(error, ClientError):
        return f"{service} error: {error}"

    error_code = error.response.get('Error', {}).get('Code', 'Unknown')
    error_message = error.response.get('Error', {}).get('Message', str(error))

    error_map = {
        'AccessDenied': f"Insufficient permissions for {service} operation",
        'AccessDeniedException': f"Insufficient permissions for {service} operation",
        'ExpiredToken': f"AWS credentials expired while calling {service}",
        'Throttling': f"{service} API rate limit exceeded",
        'ThrottlingException': f"{service} API rate limit exceeded",
    }

    return error_map.get(error_code, f"{service} API error ({error_code}): {error_message}")


def _error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', '')


class CloudFormationHelper:
    """Stack status, outputs and deletion"""

    def __init__(self, cloudformation_client=None,
                 poll_interval: float = 5.0,
                 max_attempts: int = 60,
                 sleep: Callable[[float], None] = time.sleep):
        self.cloudformation_client = cloudformation_client or boto3.client('cloudformation')
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self._sleep = sleep

    def _describe_stack(self, stack_name: str) -> Optional[Dict[str, Any]]:
        try:
            response = self.cloudformation_client.describe_stacks(StackName=stack_name)
        except ClientError as e:
            if _error_code(e) == 'ValidationError' and 'does not exist' in str(e):
                return None
            raise AWSHelperError(format_aws_error(e, "CloudFormation")) from e
        except BotoCoreError as e:
            raise AWSHelperError(format_aws_error(e, "CloudFormation")) from e

        stacks = response.get('Stacks', [])
        return stacks[0] if stacks else None

    def get_stack_status(self, stack_name: str) -> StackStatus:
        """Return the stack status, or NOT_FOUND if the stack does not exist"""
        stack = self._describe_stack(stack_name)
        if stack is None:
            return StackStatus.NOT_FOUND
        try:
            return StackStatus.from_aws(stack.get('StackStatus'))
        except ValueError as e:
            raise AWSHelperError(
                f"Unrecognized status {stack.get('StackStatus')!r} for stack {stack_name}"
            ) from e

    def get_output_value(self, stack_name: str, output_key: str) -> Optional[str]:
        """Return the value of a stack output, or None if the stack or output is missing"""
        stack = self._describe_stack(stack_name)
        if stack is None:
            return None

        for output in stack.get('Outputs', []):
            if output.get('OutputKey') == output_key:
                return output.get('OutputValue')
        return None

    def delete_stack(self, stack_name: str) -> None:
        """Request deletion of the stack; deleting a missing stack is not an error"""
        logger.info(f"Deleting CloudFormation stack {stack_name}")
        try:
            self.cloudformation_client.delete_stack(StackName=stack_name)
        except (ClientError, BotoCoreError) as e:
            raise AWSHelperError(format_aws_error(e, "CloudFormation")) from e

    def is_deleted(self, stack_name: str) -> bool:
        """
        Poll until the stack no longer exists

        Returns:
            True once the stack is gone, False if it is still present after
            max_attempts polls or its deletion failed
        """
        for attempt in range(1, self.max_attempts + 1):
            status = self.get_stack_status(stack_name)
            if status in (StackStatus.NOT_FOUND, StackStatus.DELETE_COMPLETE):
                logger.info(f"Stack {stack_name} deleted after {attempt} poll(s)")
                return True
            if status == StackStatus.DELETE_FAILED:
                logger.error(f"Deletion of stack {stack_name} failed")
                return False

            logger.debug(f"Stack {stack_name} is {status.value} (poll {attempt}/{self.max_attempts})")
            if attempt < self.max_attempts:
                self._sleep(self.poll_interval)

        logger.error(f"Stack {stack_name} still exists after {self.max_attempts} polls")
        return False


class S3Helper:
    """Bucket existence and deletion"""

    def __init__(self, s3_client=None):
        self.s3_client = s3_client or boto3.client('s3')

    def bucket_exists(self, bucket_name: str) -> bool:
        """Return True if the bucket exists, including when it belongs to another account"""
        try:
            self.s3_client.head_bucket(Bucket=bucket_name)
            return True
        except ClientError as e:
            code = _error_code(e)
            if code in BUCKET_NOT_FOUND_CODES:
                return False
            if code in ('403', 'AccessDenied'):
                logger.warning(f"Bucket {bucket_name} exists but access is denied")
                return True
            raise AWSHelperError(format_aws_error(e, "S3")) from e
        except BotoCoreError as e:
            raise AWSHelperError(format_aws_error(e, "S3")) from e

    def _empty_bucket(self, bucket_name: str) -> int:
        """Delete every object version and delete marker; returns the number removed"""
        removed = 0
        paginator = self.s3_client.get_paginator('list_object_versions')
        for page in paginator.paginate(Bucket=bucket_name):
            keys = [
                {'Key': entry['Key'], 'VersionId': entry['VersionId']}
                for entry in page.get('Versions', []) + page.get('DeleteMarkers', [])
            ]
            for start in range(0, len(keys), S3_DELETE_BATCH_SIZE):
                batch = keys[start:start + S3_DELETE_BATCH_SIZE]
                self.s3_client.delete_objects(
                    Bucket=bucket_name,
                    Delete={'Objects': batch, 'Quiet': True}
                )
                removed += len(batch)
        return removed

    def delete_bucket(self, bucket_name: str) -> None:
        """Empty and delete the bucket; a missing bucket is not an error"""
        logger.info(f"Deleting S3 bucket {bucket_name}")
        try:
            removed = self._empty_bucket(bucket_name)
            if removed:
                logger.info(f"Removed {removed} object version(s) from {bucket_name}")
            self.s3_client.delete_bucket(Bucket=bucket_name)
        except ClientError as e:
            if _error_code(e) in BUCKET_NOT_FOUND_CODES:
                logger.info(f"Bucket {bucket_name} does not exist, nothing to delete")
                return
            raise AWSHelperError(format_aws_error(e, "S3")) from e
        except BotoCoreError as e:
            raise AWSHelperError(format_aws_error(e, "S3")) from e


class LambdaHelper:
    """Lambda function enumeration"""

    def __init__(self, lambda_client=None):
        self.lambda_client = lambda_client or boto3.client('lambda')

    def filter_by_cloudformation_stack(self, stack_name: str) -> List[LambdaFunction]:
        """Return the functions tagged as belonging to the given stack"""
        functions = []
        try:
            paginator = self.lambda_client.get_paginator('list_functions')
            for page in paginator.paginate():
                for function in page.get('Functions', []):
                    tags = self.lambda_client.list_tags(Resource=function['FunctionArn']).get('Tags', {})
                    if tags.get(STACK_NAME_TAG) == stack_name:
                        functions.append(LambdaFunction.from_aws(function))
        except (ClientError, BotoCoreError) as e:
            raise AWSHelperError(format_aws_error(e, "Lambda")) from e

        logger.info(f"Found {len(functions)} Lambda function(s) in stack {stack_name}")
        return functions


class AWSHelpers:
    """The three helpers a verification run needs"""

    def __init__(self, cloudformation: CloudFormationHelper, s3: S3Helper, lambda_: LambdaHelper):
        self.cloudformation = cloudformation
        self.s3 = s3
        self.lambda_ = lambda_


def create_aws_helpers(region: str,
                       timeout: float = 60.0,
                       poll_interval: float = 5.0,
                       max_attempts: int = 60) -> AWSHelpers:
    """
    Create helpers backed by boto3 clients in the given region

    Args:
        region: AWS region of the stack
        timeout: Connect and read timeout for each AWS call, in seconds
        poll_interval: Seconds between stack deletion polls
        max_attempts: Number of stack deletion polls before giving up
    """
    session = boto3.Session(region_name=region)
    client_config = Config(connect_timeout=timeout, read_timeout=timeout)

    helpers = AWSHelpers(
        cloudformation=CloudFormationHelper(
            session.client('cloudformation', config=client_config),
            poll_interval=poll_interval,
            max_attempts=max_attempts
        ),
        s3=S3Helper(session.client('s3', config=client_config)),
        lambda_=LambdaHelper(session.client('lambda', config=client_config))
    )
    logger.info(f"AWS clients initialized for region {region}")
    return helpers
