"""
HTTP probes against the deployed SimpleCalculator REST API
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

import requests

from .models import ProbeResult

logger = logging.getLogger(__name__)


class ProbeAssertionError(AssertionError):
    """Base class for a probe that did not return the expected response"""

    def __init__(self, message: str, probe_name: str, url: str):
        super().__init__(message)
        self.probe_name = probe_name
        self.url = url


class ProbeStatusError(ProbeAssertionError):
    """The probe returned a non-2xx HTTP status"""

    def __init__(self, probe_name: str, url: str, status_code: int, body: str):
        super().__init__(
            f"{probe_name}: GET {url} returned HTTP {status_code} (expected 2xx); body: {body!r}",
            probe_name,
            url
        )
        self.status_code = status_code
        self.body = body


class ProbeBodyMismatchError(ProbeAssertionError):
    """The probe succeeded at the HTTP level but returned the wrong body"""

    def __init__(self, probe_name: str, url: str, expected: str, actual: str):
        super().__init__(
            f"{probe_name}: GET {url} expected body {expected!r} but got {actual!r}",
            probe_name,
            url
        )
        self.expected = expected
        self.actual = actual


@dataclass(frozen=True)
class Probe:
    """A single GET request and the literal body it must return"""
    name: str
    path: str
    expected_body: str
    params: Dict[str, str] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)

    def url_for(self, prefix: str) -> str:
        return f"{prefix.rstrip('/')}/{self.path.lstrip('/')}"


SIMPLE_CALCULATOR_PROBES = (
    Probe("Add", "SimpleCalculator/Add", "6", params={"x": "2", "y": "4"}),
    Probe("Multiply", "SimpleCalculator/Multiply/2/10", "20"),
    Probe("Divide", "SimpleCalculator/DivideAsync/50/5", "10"),
    Probe("Subtract", "SimpleCalculator/Subtract", "8", headers={"x": "10", "y": "2"}),
)


class EndpointProber:
    """
    Issues probes one at a time and stops at the first failure

    Transport errors from requests are not caught; they propagate to the caller.
    """

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = 30.0):
        self.session = session or requests.Session()
        self.timeout = timeout

    def run_probe(self, prefix: str, probe: Probe) -> ProbeResult:
        """
        Issue one probe and check its response

        Raises:
            ProbeStatusError: non-2xx response
            ProbeBodyMismatchError: 2xx response with an unexpected body
        """
        url = probe.url_for(prefix)
        logger.info(f"Probing {probe.name}: GET {url}")

        start_time = time.time()
        response = self.session.get(
            url,
            params=probe.params or None,
            headers=probe.headers or None,
            timeout=self.timeout
        )
        duration_ms = int((time.time() - start_time) * 1000)

        body = response.text
        if not 200 <= response.status_code < 300:
            raise ProbeStatusError(probe.name, url, response.status_code, body)
        if body != probe.expected_body:
            raise ProbeBodyMismatchError(probe.name, url, probe.expected_body, body)

        logger.info(f"{probe.name} returned {body!r} in {duration_ms}ms")
        return ProbeResult(
            name=probe.name,
            url=url,
            status_code=response.status_code,
            body=body,
            expected_body=probe.expected_body,
            duration_ms=duration_ms
        )

    def run_all(self, prefix: str,
                probes: Sequence[Probe] = SIMPLE_CALCULATOR_PROBES,
                on_result: Optional[Callable[[ProbeResult], None]] = None,
                on_error: Optional[Callable[[Probe, str, requests.RequestException], None]] = None
                ) -> List[ProbeResult]:
        """
        Run probes in order; the first failure aborts the rest

        on_error receives the probe, its URL and the transport error before
        the error propagates.
        """
        results = []
        for probe in probes:
            try:
                result = self.run_probe(prefix, probe)
            except requests.RequestException as e:
                logger.error(f"{probe.name}: GET {probe.url_for(prefix)} failed: {e}")
                if on_error:
                    on_error(probe, probe.url_for(prefix), e)
                raise
            results.append(result)
            if on_result:
                on_result(result)
        return results

    def close(self) -> None:
        self.session.close()
