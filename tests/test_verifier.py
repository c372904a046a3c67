"""
Unit tests for the stack verifier: preconditions, probes and guaranteed cleanup
"""
import pytest
import requests
from unittest.mock import Mock, patch

from stack_verifier.aws_helpers import AWSHelpers, AWSHelperError, CloudFormationHelper
from stack_verifier.config import VerifierConfig
from stack_verifier.models import CheckStatus, DeploymentHandle, LambdaFunction, StackStatus
from stack_verifier.probes import EndpointProber, ProbeBodyMismatchError, ProbeStatusError
from stack_verifier.verifier import StackVerifier, PreconditionError, CleanupError

STACK_NAME = "test-serverless-app"
BUCKET_NAME = "devex-test-serverless-app"
REST_API_URL = "https://abc123.execute-api.us-east-1.amazonaws.com/Prod"
HTTP_API_URL = "https://def456.execute-api.us-east-1.amazonaws.com"

CALCULATOR_BODIES = {
    "/SimpleCalculator/Add": "6",
    "/SimpleCalculator/Multiply/2/10": "20",
    "/SimpleCalculator/DivideAsync/50/5": "10",
    "/SimpleCalculator/Subtract": "8",
}


def make_response(text, status_code=200):
    response = Mock()
    response.text = text
    response.status_code = status_code
    return response


def calculator_session(overrides=None):
    """A requests session stand-in that answers like the deployed SimpleCalculator API"""
    bodies = dict(CALCULATOR_BODIES)
    bodies.update(overrides or {})

    def get(url, params=None, headers=None, timeout=None):
        value = bodies[url[len(REST_API_URL):]]
        if isinstance(value, Exception):
            raise value
        if isinstance(value, tuple):
            return make_response(value[1], status_code=value[0])
        return make_response(value)

    session = Mock()
    session.get.side_effect = get
    return session


def healthy_helpers():
    """AWS helpers describing a healthy stack that deletes cleanly"""
    cloudformation = Mock()
    cloudformation.get_stack_status.return_value = StackStatus.CREATE_COMPLETE
    cloudformation.get_output_value.side_effect = lambda name, key: {
        "RestApiURL": REST_API_URL,
        "HttpApiURL": HTTP_API_URL
    }[key]
    cloudformation.is_deleted.return_value = True

    s3 = Mock()
    s3.bucket_exists.side_effect = [True, False]

    lambda_ = Mock()
    lambda_.filter_by_cloudformation_stack.return_value = [
        LambdaFunction(f"{STACK_NAME}-Function{i}", f"arn:aws:lambda:us-east-1:123456789012:function:fn{i}")
        for i in range(11)
    ]
    return AWSHelpers(cloudformation, s3, lambda_)


def make_verifier(helpers=None, session=None):
    return StackVerifier(
        DeploymentHandle(STACK_NAME, BUCKET_NAME),
        helpers or healthy_helpers(),
        prober=EndpointProber(session=session or calculator_session(), timeout=5)
    )


class TestInitialize:
    """Test precondition checks"""

    def test_healthy_stack(self):
        verifier = make_verifier()

        context = verifier.initialize()

        assert context.rest_api_url == REST_API_URL
        assert context.http_api_url == HTTP_API_URL
        assert len(context.lambda_functions) == 11
        assert context.handle == DeploymentHandle(STACK_NAME, BUCKET_NAME)
        assert verifier.report.count(CheckStatus.PASS) == 5
        assert verifier.report.count(CheckStatus.FAIL) == 0

    def test_reports_every_failed_precondition(self):
        helpers = healthy_helpers()
        helpers.cloudformation.get_stack_status.return_value = StackStatus.ROLLBACK_COMPLETE
        helpers.s3.bucket_exists.side_effect = None
        helpers.s3.bucket_exists.return_value = False
        verifier = make_verifier(helpers)

        with pytest.raises(PreconditionError) as exc_info:
            verifier.initialize()

        failures = exc_info.value.failures
        assert len(failures) == 2
        assert "ROLLBACK_COMPLETE" in failures[0]
        assert f"Bucket '{BUCKET_NAME}' does not exist" in failures[1]
        helpers.lambda_.filter_by_cloudformation_stack.assert_called_once_with(STACK_NAME)
        assert helpers.cloudformation.get_output_value.call_count == 2

    def test_status_must_be_create_complete(self):
        helpers = healthy_helpers()
        helpers.cloudformation.get_stack_status.return_value = StackStatus.UPDATE_COMPLETE
        verifier = make_verifier(helpers)

        with pytest.raises(PreconditionError, match="UPDATE_COMPLETE, expected CREATE_COMPLETE"):
            verifier.initialize()

    def test_wrong_function_count(self):
        helpers = healthy_helpers()
        helpers.lambda_.filter_by_cloudformation_stack.return_value = [LambdaFunction("only-one")]
        verifier = make_verifier(helpers)

        with pytest.raises(PreconditionError, match="has 1 Lambda functions, expected 11"):
            verifier.initialize()

    def test_empty_endpoint_output(self):
        helpers = healthy_helpers()
        helpers.cloudformation.get_output_value.side_effect = lambda name, key: {
            "RestApiURL": REST_API_URL,
            "HttpApiURL": ""
        }[key]
        verifier = make_verifier(helpers)

        with pytest.raises(PreconditionError) as exc_info:
            verifier.initialize()

        assert exc_info.value.failures == [f"Output 'HttpApiURL' of stack '{STACK_NAME}' is missing or empty"]

    def test_lookup_error_does_not_stop_other_checks(self):
        helpers = healthy_helpers()
        helpers.cloudformation.get_stack_status.side_effect = AWSHelperError("CloudFormation API error")
        helpers.lambda_.filter_by_cloudformation_stack.return_value = []
        verifier = make_verifier(helpers)

        with pytest.raises(PreconditionError) as exc_info:
            verifier.initialize()

        failures = exc_info.value.failures
        assert len(failures) == 2
        assert "Could not read the status" in failures[0]
        assert "has 0 Lambda functions" in failures[1]
        helpers.s3.bucket_exists.assert_called_once_with(BUCKET_NAME)

    def test_unrecognized_stack_status_does_not_stop_other_checks(self):
        cf_client = Mock()
        cf_client.describe_stacks.return_value = {"Stacks": [{
            "StackName": STACK_NAME,
            "StackStatus": "IMPORT_VALIDATION_PENDING",
            "Outputs": [
                {"OutputKey": "RestApiURL", "OutputValue": REST_API_URL},
                {"OutputKey": "HttpApiURL", "OutputValue": HTTP_API_URL}
            ]
        }]}
        helpers = healthy_helpers()
        helpers.cloudformation = CloudFormationHelper(cf_client, sleep=Mock())
        verifier = make_verifier(helpers)

        with pytest.raises(PreconditionError) as exc_info:
            verifier.initialize()

        assert exc_info.value.failures == [f"Could not read the status of stack '{STACK_NAME}'"]
        helpers.s3.bucket_exists.assert_called_once_with(BUCKET_NAME)
        helpers.lambda_.filter_by_cloudformation_stack.assert_called_once_with(STACK_NAME)
        assert verifier.report.count(CheckStatus.PASS) == 4

    def test_unexpected_lookup_error_is_recorded(self):
        helpers = healthy_helpers()
        helpers.lambda_.filter_by_cloudformation_stack.side_effect = KeyError("FunctionArn")
        verifier = make_verifier(helpers)

        with pytest.raises(PreconditionError) as exc_info:
            verifier.initialize()

        assert exc_info.value.failures == [f"Could not list the Lambda functions of stack '{STACK_NAME}'"]
        assert helpers.cloudformation.get_output_value.call_count == 2
        failed = [r for r in verifier.report.results if r.status == CheckStatus.FAIL]
        assert [r.name for r in failed] == ["Lambda Functions"]
        assert "KeyError" in failed[0].message

    def test_all_preconditions_fail(self):
        helpers = healthy_helpers()
        helpers.cloudformation.get_stack_status.return_value = StackStatus.NOT_FOUND
        helpers.cloudformation.get_output_value.side_effect = None
        helpers.cloudformation.get_output_value.return_value = None
        helpers.s3.bucket_exists.side_effect = None
        helpers.s3.bucket_exists.return_value = False
        helpers.lambda_.filter_by_cloudformation_stack.return_value = []
        verifier = make_verifier(helpers)

        with pytest.raises(PreconditionError) as exc_info:
            verifier.initialize()

        assert len(exc_info.value.failures) == 5
        assert "5 precondition(s) failed" in str(exc_info.value)


class TestVerifyEndpoints:
    """Test the SimpleCalculator probe sequence"""

    def test_all_probes_pass(self):
        verifier = make_verifier()
        context = verifier.initialize()

        results = verifier.verify_endpoints(context)

        assert [(r.name, r.body) for r in results] == [
            ("Add", "6"), ("Multiply", "20"), ("Divide", "10"), ("Subtract", "8")
        ]
        assert all(r.succeeded for r in results)

    def test_probes_use_rest_api_url(self):
        session = calculator_session()
        verifier = make_verifier(session=session)

        verifier.verify_endpoints(verifier.initialize())

        urls = [c[0][0] for c in session.get.call_args_list]
        assert all(url.startswith(REST_API_URL) for url in urls)
        assert not any(url.startswith(HTTP_API_URL) for url in urls)

    def test_failed_probe_is_recorded(self):
        verifier = make_verifier(session=calculator_session({"/SimpleCalculator/DivideAsync/50/5": "5"}))
        context = verifier.initialize()

        with pytest.raises(ProbeBodyMismatchError):
            verifier.verify_endpoints(context)

        failed = [r for r in verifier.report.results if r.status == CheckStatus.FAIL]
        assert [r.name for r in failed] == ["Probe Divide"]

    def test_transport_failure_is_recorded_under_probe_name(self):
        verifier = make_verifier(session=calculator_session({
            "/SimpleCalculator/Subtract": requests.ConnectionError("connection reset")
        }))
        context = verifier.initialize()

        with pytest.raises(requests.ConnectionError):
            verifier.verify_endpoints(context)

        failed = [r for r in verifier.report.results if r.status == CheckStatus.FAIL]
        assert [r.name for r in failed] == ["Probe Subtract"]
        assert failed[0].details == {"url": f"{REST_API_URL}/SimpleCalculator/Subtract"}
        assert "connection reset" in failed[0].message


class TestCleanup:
    """Test stack and bucket deletion"""

    def test_cleanup_success(self):
        helpers = healthy_helpers()
        helpers.s3.bucket_exists.side_effect = None
        helpers.s3.bucket_exists.return_value = False
        verifier = make_verifier(helpers)

        verifier.cleanup()

        helpers.cloudformation.delete_stack.assert_called_once_with(STACK_NAME)
        helpers.cloudformation.is_deleted.assert_called_once_with(STACK_NAME)
        helpers.s3.delete_bucket.assert_called_once_with(BUCKET_NAME)
        helpers.s3.bucket_exists.assert_called_once_with(BUCKET_NAME)

    def test_cleanup_order(self):
        helpers = healthy_helpers()
        helpers.s3.bucket_exists.side_effect = None
        helpers.s3.bucket_exists.return_value = False
        calls = Mock()
        calls.attach_mock(helpers.cloudformation.delete_stack, "delete_stack")
        calls.attach_mock(helpers.cloudformation.is_deleted, "is_deleted")
        calls.attach_mock(helpers.s3.delete_bucket, "delete_bucket")
        calls.attach_mock(helpers.s3.bucket_exists, "bucket_exists")

        make_verifier(helpers).cleanup()

        assert [c[0] for c in calls.mock_calls] == ["delete_stack", "is_deleted", "delete_bucket", "bucket_exists"]

    def test_stack_never_deleted(self):
        helpers = healthy_helpers()
        helpers.cloudformation.is_deleted.return_value = False
        helpers.s3.bucket_exists.side_effect = None
        helpers.s3.bucket_exists.return_value = False
        verifier = make_verifier(helpers)

        with pytest.raises(CleanupError) as exc_info:
            verifier.cleanup()

        assert exc_info.value.resources == [STACK_NAME]
        assert f"The stack '{STACK_NAME}' still exists" in str(exc_info.value)
        assert "manually deleted from the AWS console" in str(exc_info.value)
        helpers.s3.delete_bucket.assert_called_once_with(BUCKET_NAME)

    def test_bucket_never_deleted(self):
        helpers = healthy_helpers()
        helpers.s3.bucket_exists.side_effect = None
        helpers.s3.bucket_exists.return_value = True
        verifier = make_verifier(helpers)

        with pytest.raises(CleanupError) as exc_info:
            verifier.cleanup()

        assert exc_info.value.resources == [BUCKET_NAME]
        assert f"The bucket '{BUCKET_NAME}' still exists" in str(exc_info.value)

    def test_delete_request_error(self):
        helpers = healthy_helpers()
        helpers.cloudformation.delete_stack.side_effect = AWSHelperError("Insufficient permissions")
        helpers.s3.bucket_exists.side_effect = None
        helpers.s3.bucket_exists.return_value = False
        verifier = make_verifier(helpers)

        with pytest.raises(CleanupError, match="could not be deleted"):
            verifier.cleanup()

        helpers.cloudformation.is_deleted.assert_not_called()
        helpers.s3.delete_bucket.assert_called_once_with(BUCKET_NAME)

    def test_unrecognized_status_while_deleting_stack(self):
        cf_client = Mock()
        cf_client.describe_stacks.return_value = {"Stacks": [{
            "StackName": STACK_NAME, "StackStatus": "IMPORT_VALIDATION_PENDING"
        }]}
        helpers = healthy_helpers()
        helpers.cloudformation = CloudFormationHelper(cf_client, sleep=Mock())
        helpers.s3.bucket_exists.side_effect = None
        helpers.s3.bucket_exists.return_value = False
        verifier = make_verifier(helpers)

        with pytest.raises(CleanupError) as exc_info:
            verifier.cleanup()

        cf_client.delete_stack.assert_called_once_with(StackName=STACK_NAME)
        helpers.s3.delete_bucket.assert_called_once_with(BUCKET_NAME)
        assert exc_info.value.resources == [STACK_NAME]
        assert "Unrecognized status" in str(exc_info.value)

    @pytest.mark.parametrize("error", [ValueError("bad status"), RuntimeError("boom")])
    def test_unexpected_error_still_deletes_bucket(self, error):
        helpers = healthy_helpers()
        helpers.cloudformation.is_deleted.side_effect = error
        helpers.s3.bucket_exists.side_effect = None
        helpers.s3.bucket_exists.return_value = False
        verifier = make_verifier(helpers)

        with pytest.raises(CleanupError) as exc_info:
            verifier.cleanup()

        helpers.s3.delete_bucket.assert_called_once_with(BUCKET_NAME)
        assert exc_info.value.resources == [STACK_NAME]
        assert f"{type(error).__name__}: {error}" in str(exc_info.value)
        assert "manually deleted from the AWS console" in str(exc_info.value)

    def test_cleanup_of_deleted_resources_is_harmless(self):
        helpers = healthy_helpers()
        helpers.s3.bucket_exists.side_effect = None
        helpers.s3.bucket_exists.return_value = False
        verifier = make_verifier(helpers)

        verifier.cleanup()
        verifier.cleanup()

        assert verifier.cleanup_runs == 2
        assert verifier.report.count(CheckStatus.FAIL) == 0


class TestRun:
    """Test the full verification run and its guaranteed cleanup"""

    def test_successful_run(self):
        helpers = healthy_helpers()
        verifier = make_verifier(helpers)

        results = verifier.run()

        assert [r.body for r in results] == ["6", "20", "10", "8"]
        assert verifier.cleanup_runs == 1
        helpers.cloudformation.delete_stack.assert_called_once_with(STACK_NAME)
        helpers.s3.delete_bucket.assert_called_once_with(BUCKET_NAME)
        assert verifier.report.passed is True
        assert verifier.report.end_time is not None

    def test_cleanup_runs_once_after_probe_failure(self):
        helpers = healthy_helpers()
        session = calculator_session({"/SimpleCalculator/Multiply/2/10": "21"})
        verifier = make_verifier(helpers, session)

        with pytest.raises(ProbeBodyMismatchError):
            verifier.run()

        assert session.get.call_count == 2
        assert verifier.cleanup_runs == 1
        helpers.cloudformation.delete_stack.assert_called_once_with(STACK_NAME)
        helpers.s3.delete_bucket.assert_called_once_with(BUCKET_NAME)
        assert verifier.report.passed is False

    def test_cleanup_runs_after_status_failure(self):
        helpers = healthy_helpers()
        session = calculator_session({"/SimpleCalculator/Add": (500, "Internal server error")})
        verifier = make_verifier(helpers, session)

        with pytest.raises(ProbeStatusError):
            verifier.run()

        assert session.get.call_count == 1
        helpers.cloudformation.delete_stack.assert_called_once_with(STACK_NAME)
        helpers.s3.delete_bucket.assert_called_once_with(BUCKET_NAME)

    def test_cleanup_runs_after_transport_error(self):
        helpers = healthy_helpers()
        session = calculator_session({"/SimpleCalculator/Subtract": requests.Timeout("read timed out")})
        verifier = make_verifier(helpers, session)

        with pytest.raises(requests.Timeout):
            verifier.run()

        assert session.get.call_count == 4
        assert verifier.cleanup_runs == 1

    def test_cleanup_runs_after_precondition_failure(self):
        helpers = healthy_helpers()
        helpers.lambda_.filter_by_cloudformation_stack.return_value = []
        session = calculator_session()
        verifier = make_verifier(helpers, session)

        with pytest.raises(PreconditionError):
            verifier.run()

        session.get.assert_not_called()
        assert verifier.cleanup_runs == 1
        helpers.cloudformation.delete_stack.assert_called_once_with(STACK_NAME)
        helpers.s3.delete_bucket.assert_called_once_with(BUCKET_NAME)

    def test_cleanup_error_keeps_probe_failure_as_context(self):
        helpers = healthy_helpers()
        helpers.cloudformation.is_deleted.return_value = False
        verifier = make_verifier(helpers, calculator_session({"/SimpleCalculator/Add": "7"}))

        with pytest.raises(CleanupError) as exc_info:
            verifier.run()

        assert isinstance(exc_info.value.__context__, ProbeBodyMismatchError)
        assert exc_info.value.resources == [STACK_NAME]

    def test_independent_runs_share_no_state(self):
        first_helpers = healthy_helpers()
        first = make_verifier(first_helpers)
        first.run()

        second = make_verifier(healthy_helpers())
        context = second.initialize()

        assert len(context.lambda_functions) == 11
        assert second.report.results is not first.report.results
        assert second.cleanup_runs == 0


class TestFromConfig:
    """Test construction from configuration"""

    @patch('stack_verifier.verifier.create_aws_helpers')
    def test_from_config(self, mock_create_helpers):
        config = VerifierConfig(
            stack_name="my-stack",
            bucket_name="my-bucket",
            region="eu-central-1",
            expected_function_count=3,
            http_timeout=7,
            aws_timeout=20,
            delete_poll_interval=1,
            delete_max_attempts=10
        )

        verifier = StackVerifier.from_config(config)

        mock_create_helpers.assert_called_once_with(
            "eu-central-1", timeout=20, poll_interval=1, max_attempts=10
        )
        assert verifier.helpers == mock_create_helpers.return_value
        assert verifier.handle == DeploymentHandle("my-stack", "my-bucket")
        assert verifier.expected_function_count == 3
        assert verifier.prober.timeout == 7
        assert verifier.report.region == "eu-central-1"
