"""
Serverless stack verifier

Checks a deployed SimpleCalculator stack, probes its REST API and deletes it.
"""
from .errors import StackVerifierError
from .config import VerifierConfig, ConfigurationError, get_configuration
from .models import StackStatus, DeploymentHandle, LambdaFunction, ReadyContext, ProbeResult
from .probes import ProbeAssertionError, ProbeStatusError, ProbeBodyMismatchError
from .aws_helpers import AWSHelperError
from .verifier import StackVerifier, PreconditionError, CleanupError

__version__ = "1.0.0"

__all__ = [
    "StackVerifierError",
    "VerifierConfig",
    "ConfigurationError",
    "get_configuration",
    "StackStatus",
    "DeploymentHandle",
    "LambdaFunction",
    "ReadyContext",
    "ProbeResult",
    "ProbeAssertionError",
    "ProbeStatusError",
    "ProbeBodyMismatchError",
    "AWSHelperError",
    "StackVerifier",
    "PreconditionError",
    "CleanupError",
]
