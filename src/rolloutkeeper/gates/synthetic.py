"""Synthetic traffic check through a test routing endpoint."""

from __future__ import annotations

import urllib.error
import urllib.request
from typing import Callable

from rolloutkeeper.gates.base import GateContext, GateResult, VerificationGate

# (status, headers) for a GET; raises OSError when the endpoint is unreachable.
Fetch = Callable[[str, float], tuple[int, dict[str, str]]]


def http_get(url: str, timeout_s: float) -> tuple[int, dict[str, str]]:
    request = urllib.request.Request(url, headers={"User-Agent": "rolloutkeeper-synthetic/1"})
    try:
        with urllib.request.urlopen(request, timeout=timeout_s) as response:
            status = int(getattr(response, "status", 0) or 0)
            headers = {k.lower(): v for k, v in response.headers.items()}
            response.read()
    except urllib.error.HTTPError as exc:
        headers = {k.lower(): v for k, v in (exc.headers.items() if exc.headers else [])}
        return int(exc.code), headers
    except urllib.error.URLError as exc:
        raise OSError(f"url error: {exc.reason}") from exc
    return status, headers


class SyntheticTrafficGate(VerificationGate):
    """Sends ``samples`` GET requests and checks each response signature.

    ``url`` may reference ``{namespace}``, ``{target}`` and ``{endpoint}``
    (the preview endpoint name, or the traffic endpoint when none is set).
    Unreachable endpoints keep the gate PENDING; a reachable endpoint with the
    wrong status or header value fails it.
    """

    def __init__(
        self,
        name: str,
        *,
        url: str,
        expect_status: int = 200,
        expect_header: str | None = None,
        expect_value: str | None = None,
        samples: int = 3,
        timeout_s: float = 5.0,
        fetch: Fetch | None = None,
    ) -> None:
        self.name = name
        self.url = url
        self.expect_status = int(expect_status)
        self.expect_header = expect_header.lower() if expect_header else None
        self.expect_value = expect_value
        self.samples = max(1, int(samples))
        self.timeout_s = float(timeout_s)
        self.fetch = fetch or http_get

    def resolve_url(self, target: str, context: GateContext) -> str:
        plan = context.plan
        endpoint = plan.preview_endpoint or plan.endpoint
        return self.url.format(namespace=plan.namespace, target=target, endpoint=endpoint.name)

    def evaluate(self, target: str, context: GateContext) -> GateResult:
        url = self.resolve_url(target, context)
        matched = 0
        for _ in range(self.samples):
            try:
                status, headers = self.fetch(url, self.timeout_s)
            except OSError as exc:
                return GateResult.pending("endpoint_unreachable", url=url, error=str(exc))
            if status != self.expect_status:
                return GateResult.failed("unexpected_status", url=url, status=status, expected=self.expect_status)
            if self.expect_header is not None:
                value = headers.get(self.expect_header)
                if value is None or (self.expect_value is not None and value != self.expect_value):
                    return GateResult.failed(
                        "signature_mismatch",
                        url=url,
                        header=self.expect_header,
                        value=value,
                        expected=self.expect_value,
                    )
            matched += 1
        return GateResult.passed(url=url, samples=matched)
