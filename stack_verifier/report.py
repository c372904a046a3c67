"""
Run report for a stack verification
"""
import json
import logging
from datetime import datetime
from typing import Dict, Any, List, Optional

from .models import CheckResult, CheckStatus, DeploymentHandle

logger = logging.getLogger(__name__)


class RunReport:
    """Collects check results for one run and renders them"""

    def __init__(self, handle: DeploymentHandle, region: Optional[str] = None):
        self.handle = handle
        self.region = region
        self.results: List[CheckResult] = []
        self.start_time = datetime.utcnow()
        self.end_time: Optional[datetime] = None

    def add_result(self, name: str, status: CheckStatus, message: str,
                   details: Optional[Dict[str, Any]] = None,
                   duration_ms: Optional[int] = None) -> CheckResult:
        """Record a check result and log it"""
        result = CheckResult(name, status, message, details, duration_ms)
        self.results.append(result)

        if status == CheckStatus.FAIL:
            logger.error(f"[{status.value}] {name}: {message}")
        else:
            logger.info(f"[{status.value}] {name}: {message}")

        if details and status == CheckStatus.FAIL:
            logger.debug(f"Details: {json.dumps(details, indent=2, default=str)}")
        return result

    def count(self, status: CheckStatus) -> int:
        return len([r for r in self.results if r.status == status])

    @property
    def passed(self) -> bool:
        return bool(self.results) and self.count(CheckStatus.FAIL) == 0

    def finish(self) -> None:
        self.end_time = datetime.utcnow()

    def generate_report(self) -> Dict[str, Any]:
        """Build the JSON-serializable report"""
        end_time = self.end_time or datetime.utcnow()
        return {
            'start_time': self.start_time.isoformat() + "Z",
            'end_time': end_time.isoformat() + "Z",
            'total_duration_seconds': (end_time - self.start_time).total_seconds(),
            'stack_name': self.handle.stack_name,
            'bucket_name': self.handle.bucket_name,
            'region': self.region,
            'summary': {
                'total_checks': len(self.results),
                'passed': self.count(CheckStatus.PASS),
                'failed': self.count(CheckStatus.FAIL),
                'skipped': self.count(CheckStatus.SKIP)
            },
            'overall_status': "PASSED" if self.passed else "FAILED",
            'results': [result.to_dict() for result in self.results]
        }

    def save(self, filename: str) -> None:
        """Write the JSON report to a file"""
        with open(filename, "w") as f:
            json.dump(self.generate_report(), f, indent=2)
        logger.info(f"Detailed report saved to: {filename}")

    def print_summary(self) -> None:
        """Log a summary of the run"""
        total = len(self.results)
        logger.info("Verification Summary")
        logger.info("====================")
        logger.info(f"Stack: {self.handle.stack_name}  Bucket: {self.handle.bucket_name}")
        logger.info(f"Total Checks: {total}")
        logger.info(f"Passed: {self.count(CheckStatus.PASS)}")
        logger.info(f"Failed: {self.count(CheckStatus.FAIL)}")
        logger.info(f"Skipped: {self.count(CheckStatus.SKIP)}")

        for result in self.results:
            if result.status == CheckStatus.FAIL:
                logger.error(f"  {result.name}: {result.message}")

        if self.passed:
            logger.info("Stack verification PASSED")
        else:
            logger.error("Stack verification FAILED")
