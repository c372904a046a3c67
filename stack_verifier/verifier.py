"""
Stack verifier: precondition checks, endpoint probes and guaranteed cleanup
"""
import logging
import time
from typing import Any, Callable, List, Optional, Tuple

import requests

from .aws_helpers import AWSHelpers, AWSHelperError, create_aws_helpers
from .config import VerifierConfig
from .errors import StackVerifierError
from .models import CheckStatus, DeploymentHandle, ProbeResult, ReadyContext, StackStatus
from .probes import EndpointProber, Probe, ProbeAssertionError, SIMPLE_CALCULATOR_PROBES
from .report import RunReport

logger = logging.getLogger(__name__)

REST_API_URL_OUTPUT = "RestApiURL"
HTTP_API_URL_OUTPUT = "HttpApiURL"


class PreconditionError(StackVerifierError):
    """The deployment is not in the expected state; lists every violated precondition"""

    def __init__(self, failures: List[str]):
        self.failures = list(failures)
        lines = "\n".join(f"  - {failure}" for failure in self.failures)
        super().__init__(f"{len(self.failures)} precondition(s) failed:\n{lines}")


class CleanupError(StackVerifierError):
    """A resource survived deletion and needs manual removal"""

    def __init__(self, failures: List[str], resources: List[str]):
        self.failures = list(failures)
        self.resources = list(resources)
        super().__init__("\n".join(self.failures))


class StackVerifier:
    """
    Verifies a deployed SimpleCalculator stack, then deletes it

    run() performs initialize(), then verify_endpoints(), and always finishes
    with cleanup(), whatever happened before.
    """

    def __init__(self, handle: DeploymentHandle,
                 helpers: AWSHelpers,
                 prober: Optional[EndpointProber] = None,
                 expected_function_count: int = 11,
                 report: Optional[RunReport] = None):
        self.handle = handle
        self.helpers = helpers
        self.prober = prober or EndpointProber()
        self.expected_function_count = expected_function_count
        self.report = report or RunReport(handle)
        self.cleanup_runs = 0

    @classmethod
    def from_config(cls, config: VerifierConfig) -> "StackVerifier":
        """Build a verifier with real AWS clients and an HTTP session"""
        handle = DeploymentHandle(config.stack_name, config.bucket_name)
        helpers = create_aws_helpers(
            config.region,
            timeout=config.aws_timeout,
            poll_interval=config.delete_poll_interval,
            max_attempts=config.delete_max_attempts
        )
        return cls(
            handle,
            helpers,
            prober=EndpointProber(timeout=config.http_timeout),
            expected_function_count=config.expected_function_count,
            report=RunReport(handle, region=config.region)
        )

    def _lookup(self, check_name: str, func: Callable[..., Any], *args) -> Tuple[bool, Any, int]:
        """Call an AWS helper; any error is recorded as a failed check"""
        start_time = time.time()
        try:
            value = func(*args)
        except AWSHelperError as e:
            duration_ms = int((time.time() - start_time) * 1000)
            self.report.add_result(check_name, CheckStatus.FAIL, f"Lookup failed: {e}", duration_ms=duration_ms)
            return False, None, duration_ms
        except Exception as e:
            logger.exception(f"Unexpected error during {check_name} lookup")
            duration_ms = int((time.time() - start_time) * 1000)
            self.report.add_result(check_name, CheckStatus.FAIL,
                                   f"Lookup failed: {type(e).__name__}: {e}", duration_ms=duration_ms)
            return False, None, duration_ms
        return True, value, int((time.time() - start_time) * 1000)

    def initialize(self) -> ReadyContext:
        """
        Check the deployment before probing it

        Every precondition is evaluated before this raises, so a single run
        reports all of them.

        Raises:
            PreconditionError: listing each violated precondition
        """
        stack_name = self.handle.stack_name
        bucket_name = self.handle.bucket_name
        failures = []
        logger.info(f"Checking preconditions for stack {stack_name} and bucket {bucket_name}")

        ok, status, duration_ms = self._lookup(
            "Stack Status", self.helpers.cloudformation.get_stack_status, stack_name
        )
        if not ok:
            failures.append(f"Could not read the status of stack '{stack_name}'")
        elif status == StackStatus.CREATE_COMPLETE:
            self.report.add_result("Stack Status", CheckStatus.PASS,
                                   f"Stack {stack_name} is {status.value}", duration_ms=duration_ms)
        else:
            message = f"Stack '{stack_name}' is {status.value}, expected {StackStatus.CREATE_COMPLETE.value}"
            failures.append(message)
            self.report.add_result("Stack Status", CheckStatus.FAIL, message, duration_ms=duration_ms)

        ok, exists, duration_ms = self._lookup(
            "Bucket Exists", self.helpers.s3.bucket_exists, bucket_name
        )
        if not ok:
            failures.append(f"Could not check whether bucket '{bucket_name}' exists")
        elif exists:
            self.report.add_result("Bucket Exists", CheckStatus.PASS,
                                   f"Bucket {bucket_name} exists", duration_ms=duration_ms)
        else:
            message = f"Bucket '{bucket_name}' does not exist"
            failures.append(message)
            self.report.add_result("Bucket Exists", CheckStatus.FAIL, message, duration_ms=duration_ms)

        ok, functions, duration_ms = self._lookup(
            "Lambda Functions", self.helpers.lambda_.filter_by_cloudformation_stack, stack_name
        )
        if not ok:
            failures.append(f"Could not list the Lambda functions of stack '{stack_name}'")
        else:
            details = {"functions": [function.name for function in functions]}
            if len(functions) == self.expected_function_count:
                self.report.add_result("Lambda Functions", CheckStatus.PASS,
                                       f"Stack has {len(functions)} Lambda functions",
                                       details, duration_ms)
            else:
                message = (f"Stack '{stack_name}' has {len(functions)} Lambda functions, "
                           f"expected {self.expected_function_count}")
                failures.append(message)
                self.report.add_result("Lambda Functions", CheckStatus.FAIL, message, details, duration_ms)

        urls = {}
        for output_key in (REST_API_URL_OUTPUT, HTTP_API_URL_OUTPUT):
            check_name = f"Output {output_key}"
            ok, value, duration_ms = self._lookup(
                check_name, self.helpers.cloudformation.get_output_value, stack_name, output_key
            )
            if not ok:
                failures.append(f"Could not read output '{output_key}' of stack '{stack_name}'")
            elif value:
                urls[output_key] = value
                self.report.add_result(check_name, CheckStatus.PASS, value, duration_ms=duration_ms)
            else:
                message = f"Output '{output_key}' of stack '{stack_name}' is missing or empty"
                failures.append(message)
                self.report.add_result(check_name, CheckStatus.FAIL, message, duration_ms=duration_ms)

        if failures:
            raise PreconditionError(failures)

        return ReadyContext(
            handle=self.handle,
            rest_api_url=urls[REST_API_URL_OUTPUT],
            http_api_url=urls[HTTP_API_URL_OUTPUT],
            lambda_functions=functions
        )

    def verify_endpoints(self, context: ReadyContext) -> List[ProbeResult]:
        """
        Run the SimpleCalculator probes against the REST API

        Raises:
            ProbeAssertionError: the first probe with a bad status or body
            requests.RequestException: transport failure
        """
        def record(result: ProbeResult) -> None:
            self.report.add_result(
                f"Probe {result.name}", CheckStatus.PASS,
                f"{result.url} returned {result.body!r}",
                result.to_dict(), result.duration_ms
            )

        def record_error(probe: Probe, url: str, error: requests.RequestException) -> None:
            self.report.add_result(
                f"Probe {probe.name}", CheckStatus.FAIL,
                f"{probe.name}: GET {url} failed: {error}", {"url": url}
            )

        try:
            return self.prober.run_all(
                context.rest_api_url, SIMPLE_CALCULATOR_PROBES,
                on_result=record, on_error=record_error
            )
        except ProbeAssertionError as e:
            self.report.add_result(f"Probe {e.probe_name}", CheckStatus.FAIL, str(e), {"url": e.url})
            raise

    def _remove(self, check_name: str, resource: str,
                delete: Callable[[], None], confirm: Callable[[], bool]) -> Optional[str]:
        """Delete a resource and confirm it is gone; returns a failure message or None"""
        start_time = time.time()
        try:
            delete()
            gone = confirm()
        except AWSHelperError as e:
            gone = False
            message = f"{resource} could not be deleted ({e}) and will have to be manually deleted from the AWS console."
        except Exception as e:
            logger.exception(f"Unexpected error while deleting {resource}")
            gone = False
            message = (f"{resource} could not be deleted ({type(e).__name__}: {e}) "
                       f"and will have to be manually deleted from the AWS console.")
        else:
            message = f"{resource} still exists and will have to be manually deleted from the AWS console."
        duration_ms = int((time.time() - start_time) * 1000)

        if gone:
            self.report.add_result(check_name, CheckStatus.PASS, f"{resource} deleted", duration_ms=duration_ms)
            return None
        self.report.add_result(check_name, CheckStatus.FAIL, message, duration_ms=duration_ms)
        return message

    def cleanup(self) -> None:
        """
        Delete the stack, then the bucket, confirming each is gone

        The bucket is deleted even when the stack survives. Deletion is not
        retried.

        Raises:
            CleanupError: naming every resource that still exists
        """
        self.cleanup_runs += 1
        stack_name = self.handle.stack_name
        bucket_name = self.handle.bucket_name
        cloudformation = self.helpers.cloudformation
        s3 = self.helpers.s3

        failures = []
        resources = []

        failure = self._remove(
            "Delete Stack", f"The stack '{stack_name}'",
            lambda: cloudformation.delete_stack(stack_name),
            lambda: cloudformation.is_deleted(stack_name)
        )
        if failure:
            failures.append(failure)
            resources.append(stack_name)

        failure = self._remove(
            "Delete Bucket", f"The bucket '{bucket_name}'",
            lambda: s3.delete_bucket(bucket_name),
            lambda: not s3.bucket_exists(bucket_name)
        )
        if failure:
            failures.append(failure)
            resources.append(bucket_name)

        if failures:
            raise CleanupError(failures, resources)

    def run(self) -> List[ProbeResult]:
        """Initialize, probe the endpoints, and always clean up"""
        try:
            context = self.initialize()
            return self.verify_endpoints(context)
        finally:
            try:
                self.cleanup()
            finally:
                self.report.finish()
