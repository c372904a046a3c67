"""
Command line entry point for the stack verifier

Exit status is 0 when every precondition, probe and cleanup step passed,
and 1 otherwise.
"""
import argparse
import logging
import sys
from datetime import datetime
from typing import List, Optional

import requests

from .config import ConfigurationError, get_configuration
from .errors import StackVerifierError
from .probes import ProbeAssertionError
from .verifier import StackVerifier

logger = logging.getLogger(__name__)

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Verify a deployed SimpleCalculator serverless stack, then delete it"
    )
    parser.add_argument("--stack-name", help="CloudFormation stack name (env STACK_NAME)")
    parser.add_argument("--bucket-name", help="S3 bucket deployed with the stack (env BUCKET_NAME)")
    parser.add_argument("--region", help="AWS region (env AWS_REGION)")
    parser.add_argument(
        "--expected-functions",
        type=int,
        help="Number of Lambda functions the stack must own (env EXPECTED_FUNCTION_COUNT)"
    )
    parser.add_argument(
        "--report-file",
        default=f'stack_verification_{datetime.utcnow().strftime("%Y%m%d_%H%M%S")}.json',
        help="JSON report output file"
    )
    parser.add_argument("--no-report", action="store_true", help="Do not write the JSON report")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format=LOG_FORMAT
    )

    try:
        config = get_configuration({
            "stack_name": args.stack_name,
            "bucket_name": args.bucket_name,
            "region": args.region,
            "expected_function_count": args.expected_functions
        })
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    logger.info(f"Verifying stack {config.stack_name} in {config.region}")
    verifier = StackVerifier.from_config(config)

    success = False
    try:
        verifier.run()
        success = True
    except ProbeAssertionError as e:
        logger.error(f"Endpoint verification failed: {e}")
    except requests.RequestException as e:
        logger.error(f"HTTP request failed: {e}")
    except StackVerifierError as e:
        logger.error(f"{type(e).__name__}: {e}")
        if e.__context__ is not None:
            logger.error(f"Raised while handling: {type(e.__context__).__name__}: {e.__context__}")
    except Exception as e:
        logger.exception(f"Unexpected error during verification: {e}")
    finally:
        verifier.prober.close()

    verifier.report.print_summary()
    if not args.no_report:
        verifier.report.save(args.report_file)

    return 0 if success and verifier.report.passed else 1


if __name__ == "__main__":
    sys.exit(main())
