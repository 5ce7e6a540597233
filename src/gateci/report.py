# report.py
from __future__ import annotations

import json
import urllib.error
import urllib.request
from typing import Any, Dict, Optional

from .errors import ReportError
from .model import RunResult


class StatusReporter:
    """Delivers a run's status check to an HTTP endpoint."""

    def __init__(self, url: str, token: Optional[str] = None, *, timeout: float = 10.0):
        """
        Args:
            url: Endpoint that receives the JSON status (POST)
            token: Optional bearer token
            timeout: Socket timeout in seconds
        """
        self.url = url
        self.token = token
        self.timeout = timeout

    def payload(self, result: RunResult, context: Optional[Dict[str, Any]] = None) -> dict:
        data = result.to_dict()
        data["context"] = dict(context or {})
        return data

    def report(self, result: RunResult, context: Optional[Dict[str, Any]] = None) -> dict:
        """
        POST the run status.

        Returns:
            Parsed JSON response ({} for an empty body)

        Raises:
            ReportError: If the request fails
        """
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        body = json.dumps(self.payload(result, context)).encode("utf-8")
        req = urllib.request.Request(self.url, data=body, headers=headers, method="POST")

        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                response_data = response.read().decode("utf-8")
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8") if e.fp else ""
            raise ReportError(f"status report failed: {e.code} {e.reason}. {error_body}".strip(),
                              url=self.url, status=e.code) from e
        except urllib.error.URLError as e:
            raise ReportError(f"network error: {e.reason}", url=self.url) from e

        if not response_data:
            return {}
        try:
            return json.loads(response_data)
        except json.JSONDecodeError as e:
            raise ReportError(f"invalid JSON response: {e}", url=self.url) from e
