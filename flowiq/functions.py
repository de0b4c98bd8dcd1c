"""Client for invokable remote functions.

AI note generation, coding assistance, schedule optimisation and outbound
messaging are delegated to hosted functions reachable at
``{FLOWIQ_FUNCTIONS_URL}/functions/v1/<name>``.  When no URL is configured or
``FLOWIQ_OFFLINE_MODE`` is enabled, deterministic handlers from
:mod:`flowiq.offline_functions` answer instead so the API works without
network access.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

import requests

from flowiq import offline_functions
from flowiq.config import get_settings
from flowiq.errors import RemoteFunctionError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30


class RemoteFunctionClient:
    """Invoke hosted functions with a bearer key."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        *,
        offline: bool = False,
        http: Optional[requests.Session] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.offline = offline or not self.base_url
        self.http = http or requests.Session()
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def invoke(self, name: str, body: Mapping[str, Any]) -> Dict[str, Any]:
        """Call function *name* with JSON *body* and return the decoded reply."""

        if self.offline:
            logger.debug("remote_function_offline", extra={"function": name})
            return offline_functions.invoke(name, dict(body))

        url = f"{self.base_url}/functions/v1/{name}"
        try:
            resp = self.http.post(url, json=dict(body), headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as exc:
            logger.warning("remote_function_transport_error", extra={"function": name, "error": str(exc)})
            raise RemoteFunctionError(name, None, str(exc)) from exc

        if resp.status_code >= 400:
            message = resp.text[:200] if resp.text else resp.reason or "error"
            logger.warning(
                "remote_function_http_error",
                extra={"function": name, "status": resp.status_code},
            )
            raise RemoteFunctionError(name, resp.status_code, message)

        try:
            data = resp.json()
        except ValueError as exc:
            raise RemoteFunctionError(name, resp.status_code, "invalid JSON response") from exc
        if not isinstance(data, dict):
            return {"result": data}
        return data


def get_function_client() -> RemoteFunctionClient:
    """Return a client configured from the active settings."""

    settings = get_settings()
    return RemoteFunctionClient(
        settings.functions_url,
        settings.functions_key,
        offline=settings.use_offline_functions,
    )


__all__ = ["RemoteFunctionClient", "get_function_client"]
