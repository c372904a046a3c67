"""
Data models for the serverless stack verifier
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Any, List, Optional
from enum import Enum


class StackStatus(Enum):
    """CloudFormation stack statuses, plus NOT_FOUND for a stack that does not exist"""
    CREATE_IN_PROGRESS = "CREATE_IN_PROGRESS"
    CREATE_FAILED = "CREATE_FAILED"
    CREATE_COMPLETE = "CREATE_COMPLETE"
    ROLLBACK_IN_PROGRESS = "ROLLBACK_IN_PROGRESS"
    ROLLBACK_FAILED = "ROLLBACK_FAILED"
    ROLLBACK_COMPLETE = "ROLLBACK_COMPLETE"
    DELETE_IN_PROGRESS = "DELETE_IN_PROGRESS"
    DELETE_FAILED = "DELETE_FAILED"
    DELETE_COMPLETE = "DELETE_COMPLETE"
    UPDATE_IN_PROGRESS = "UPDATE_IN_PROGRESS"
    UPDATE_COMPLETE_CLEANUP_IN_PROGRESS = "UPDATE_COMPLETE_CLEANUP_IN_PROGRESS"
    UPDATE_COMPLETE = "UPDATE_COMPLETE"
    UPDATE_FAILED = "UPDATE_FAILED"
    UPDATE_ROLLBACK_IN_PROGRESS = "UPDATE_ROLLBACK_IN_PROGRESS"
    UPDATE_ROLLBACK_FAILED = "UPDATE_ROLLBACK_FAILED"
    UPDATE_ROLLBACK_COMPLETE_CLEANUP_IN_PROGRESS = "UPDATE_ROLLBACK_COMPLETE_CLEANUP_IN_PROGRESS"
    UPDATE_ROLLBACK_COMPLETE = "UPDATE_ROLLBACK_COMPLETE"
    REVIEW_IN_PROGRESS = "REVIEW_IN_PROGRESS"
    IMPORT_IN_PROGRESS = "IMPORT_IN_PROGRESS"
    IMPORT_COMPLETE = "IMPORT_COMPLETE"
    IMPORT_ROLLBACK_IN_PROGRESS = "IMPORT_ROLLBACK_IN_PROGRESS"
    IMPORT_ROLLBACK_FAILED = "IMPORT_ROLLBACK_FAILED"
    IMPORT_ROLLBACK_COMPLETE = "IMPORT_ROLLBACK_COMPLETE"
    NOT_FOUND = "NOT_FOUND"

    @classmethod
    def from_aws(cls, value: Optional[str]) -> "StackStatus":
        """Map a StackStatus string returned by CloudFormation"""
        if not value:
            return cls.NOT_FOUND
        return cls(value)


class CheckStatus(Enum):
    """Outcome of a single check recorded in the run report"""
    PASS = "PASS"
    FAIL = "FAIL"
    SKIP = "SKIP"


@dataclass(frozen=True)
class DeploymentHandle:
    """Names of the stack under test and of the bucket deployed alongside it"""
    stack_name: str
    bucket_name: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stack_name": self.stack_name,
            "bucket_name": self.bucket_name
        }


@dataclass
class LambdaFunction:
    """A Lambda function owned by the stack"""
    name: str
    arn: str = ""
    runtime: Optional[str] = None

    @classmethod
    def from_aws(cls, data: Dict[str, Any]) -> "LambdaFunction":
        """Create from a list_functions entry"""
        return cls(
            name=data.get("FunctionName", ""),
            arn=data.get("FunctionArn", ""),
            runtime=data.get("Runtime")
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "arn": self.arn,
            "runtime": self.runtime
        }


@dataclass
class ReadyContext:
    """
    State gathered by a successful initialization, consumed by endpoint verification
    """
    handle: DeploymentHandle
    rest_api_url: str
    http_api_url: str
    lambda_functions: List[LambdaFunction] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "handle": self.handle.to_dict(),
            "rest_api_url": self.rest_api_url,
            "http_api_url": self.http_api_url,
            "lambda_functions": [function.to_dict() for function in self.lambda_functions]
        }


@dataclass
class ProbeResult:
    """Outcome of one HTTP probe"""
    name: str
    url: str
    status_code: int
    body: str
    expected_body: str
    duration_ms: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return 200 <= self.status_code < 300 and self.body == self.expected_body

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "url": self.url,
            "status_code": self.status_code,
            "body": self.body,
            "expected_body": self.expected_body,
            "duration_ms": self.duration_ms
        }


@dataclass
class CheckResult:
    """Result of a precondition, probe or cleanup check"""
    name: str
    status: CheckStatus
    message: str
    details: Optional[Dict[str, Any]] = None
    duration_ms: Optional[int] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
            "details": self.details,
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp.isoformat() + "Z"
        }
