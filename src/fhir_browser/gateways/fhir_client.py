from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import requests

from ..services.bundle import Bundle
from .auth import Auth, ClientCredentialsAuth, TokenState, request_client_credentials_token, static_authorization
from .fhir_gateway import (
    FhirError,
    FhirPreconditionError,
    FhirProtocolError,
    FhirTransportError,
    SearchParams,
    parse_issues,
)
from .servers import ServerConfig, default_server

logger = logging.getLogger(__name__)

FHIR_JSON = "application/fhir+json"
VERIFY_SSL = os.getenv("FHIR_VERIFY_SSL", "true").lower() in ("1", "true", "yes", "on")
SUPPRESS_TLS_WARNINGS = os.getenv("FHIR_SUPPRESS_TLS_WARNINGS", "0").lower() in ("1", "true", "yes", "on")
# Unset means the transport default (no timeout).
_raw_timeout = os.getenv("FHIR_REQUEST_TIMEOUT", "").strip()
REQUEST_TIMEOUT: Optional[float] = float(_raw_timeout) if _raw_timeout else None

if not VERIFY_SSL and SUPPRESS_TLS_WARNINGS:
    import urllib3
    urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)


@dataclass(frozen=True)
class _ClientState:
    config: ServerConfig
    token: Optional[TokenState] = None


def _search_query(params: Optional[SearchParams]) -> List[Tuple[str, str]]:
    query: List[Tuple[str, str]] = []
    for key, value in (params or {}).items():
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            query.extend((key, str(v)) for v in value if v is not None)
        else:
            query.append((key, str(value)))
    return query


class FhirClient:
    """HTTP facade to one FHIR server with pluggable authentication.

    Configuration and the cached OAuth token live in one immutable snapshot,
    replaced wholesale by set_server/set_authentication. Every failure leaves
    this class as a FhirError.
    """

    def __init__(
        self,
        server_config: Optional[ServerConfig] = None,
        *,
        verify: Optional[bool] = None,
        timeout: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._state = _ClientState(config=server_config or default_server())
        self._lock = threading.Lock()
        self.verify = VERIFY_SSL if verify is None else bool(verify)
        self.timeout = REQUEST_TIMEOUT if timeout is None else timeout
        self._clock = clock

    # --- configuration ---
    def get_server_config(self) -> ServerConfig:
        return self._state.config

    @property
    def base_url(self) -> str:
        return self._state.config.base_url

    def set_server(self, server_config: ServerConfig) -> None:
        with self._lock:
            self._state = _ClientState(config=server_config)
        logger.info("FHIR server set to %s (%s)", server_config.name, server_config.base_url)

    def set_authentication(self, auth: Auth) -> None:
        with self._lock:
            self._state = _ClientState(config=self._state.config.with_auth(auth))
        logger.info("FHIR authentication set to %s", auth.mode)

    @property
    def token_state(self) -> Optional[TokenState]:
        return self._state.token

    # --- transport ---
    def _store_token(self, seen: _ClientState, token: Optional[TokenState]) -> None:
        with self._lock:
            # A concurrent set_server wins; never attach a token to a newer config.
            if self._state is seen:
                self._state = replace(seen, token=token)

    def _authorization(self, state: _ClientState) -> Dict[str, str]:
        auth = state.config.auth
        if isinstance(auth, ClientCredentialsAuth):
            token = state.token
            if token is None or token.is_expired(self._clock()):
                token = request_client_credentials_token(
                    auth, verify=self.verify, timeout=self.timeout, clock=self._clock
                )
                self._store_token(state, token)
            if token is None:
                return {}
            return {"Authorization": f"Bearer {token.access_token}"}
        return static_authorization(auth)

    def _send(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        *,
        params: Optional[List[Tuple[str, str]]] = None,
        body: Any = None,
    ) -> Any:
        logger.debug("FHIR %s %s", method, url)
        try:
            r = requests.request(
                method,
                url,
                params=params,
                json=body,
                headers=headers,
                timeout=self.timeout,
                verify=self.verify,
            )
        except requests.RequestException as exc:
            logger.debug("FHIR %s %s transport failure: %s", method, url, exc)
            raise FhirTransportError(500, str(exc) or type(exc).__name__) from exc
        return self._handle_response(r)

    @staticmethod
    def _handle_response(r: requests.Response) -> Any:
        if 200 <= r.status_code < 300:
            if not r.content:
                return None
            try:
                return r.json()
            except ValueError:
                return {"raw": r.text}
        try:
            body = r.json()
        except ValueError:
            body = None
        try:
            issues = parse_issues(body)
        except (AttributeError, KeyError, IndexError, TypeError, ValueError) as exc:
            logger.debug("Unreadable OperationOutcome in %s response: %s", r.status_code, exc)
            issues = []
        message = issues[0].diagnostics if issues and issues[0].diagnostics else None
        if not message:
            reason = (r.reason or "").strip()
            message = f"Request failed with status code {r.status_code}" + (f" ({reason})" if reason else "")
        raise FhirProtocolError(r.status_code, message, issues)

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[List[Tuple[str, str]]] = None,
        body: Any = None,
    ) -> Any:
        state = self._state
        headers = {"Content-Type": FHIR_JSON, "Accept": FHIR_JSON}
        headers.update(self._authorization(state))
        url = f"{state.config.base_url}{path}"
        return self._send(method, url, headers, params=params, body=body)

    def _relative_path(self, url: str) -> Optional[str]:
        """Path under the configured base URL, or None when `url` points elsewhere."""
        base = self.base_url
        if "://" not in url:
            # FHIR relative reference such as "Patient/123"
            return "/" + url.lstrip("/") if base else None
        if not base or not url.startswith(base):
            return None
        rest = url[len(base):]
        if rest and rest[0] not in "/?#":
            # https://host/fhir2/... must not match https://host/fhir
            return None
        return rest

    def owns_url(self, url: str) -> bool:
        """True when `url` is a relative reference or lies under the configured base URL."""
        return self._relative_path(url) is not None

    # --- operations ---
    def get_resource_by_id(self, resource_type: str, resource_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/{resource_type}/{resource_id}")

    def get_resource_by_url(self, url: str) -> Dict[str, Any]:
        """Fetch a resource by URL.

        URLs under the configured base reuse the authenticated path. Any other
        address gets a bare request so credentials never reach a foreign host.
        """
        relative = self._relative_path(url)
        if relative is not None:
            return self._request("GET", relative)
        return self._send("GET", url, {"Accept": FHIR_JSON})

    def search_resources(self, resource_type: str, params: Optional[SearchParams] = None) -> Bundle:
        payload = self._request("GET", f"/{resource_type}", params=_search_query(params))
        return Bundle.from_json(payload)

    def next_page(self, bundle: Bundle) -> Optional[Bundle]:
        url = bundle.next_url
        if not url:
            return None
        return Bundle.from_json(self.get_resource_by_url(url))

    def create_resource(self, resource: Mapping[str, Any]) -> Dict[str, Any]:
        resource_type = resource.get("resourceType")
        if not resource_type:
            raise FhirPreconditionError("resourceType is required to create a resource")
        return self._request("POST", f"/{resource_type}", body=dict(resource))

    def update_resource(self, resource: Mapping[str, Any]) -> Dict[str, Any]:
        if not resource.get("id"):
            raise FhirPreconditionError("Resource ID is required for updates")
        resource_type = resource.get("resourceType")
        if not resource_type:
            raise FhirPreconditionError("resourceType is required to update a resource")
        return self._request("PUT", f"/{resource_type}/{resource['id']}", body=dict(resource))

    def delete_resource(self, resource_type: str, resource_id: str) -> None:
        self._request("DELETE", f"/{resource_type}/{resource_id}")

    def get_capability_statement(self) -> Dict[str, Any]:
        return self._request("GET", "/metadata")

    def execute_batch(self, bundle: Mapping[str, Any]) -> Dict[str, Any]:
        """POST a batch/transaction Bundle to the server root; response returned as-is."""
        return self._request("POST", "/", body=dict(bundle))

    def test_connection(self) -> bool:
        try:
            self._request("GET", "/metadata")
        except FhirError as exc:
            logger.info("Connection test to %s failed (%s): %s", self.base_url, exc.status, exc.message)
            return False
        return True

    # --- convenience wrappers ---
    def search_patients(self, params: Optional[SearchParams] = None) -> Bundle:
        return self.search_resources("Patient", params)

    def get_patient(self, patient_id: str) -> Dict[str, Any]:
        return self.get_resource_by_id("Patient", patient_id)

    def search_observations(self, params: Optional[SearchParams] = None) -> Bundle:
        return self.search_resources("Observation", params)

    def get_patient_observations(self, patient_id: str) -> Bundle:
        return self.search_resources("Observation", {"patient": patient_id})

    def get_observation(self, observation_id: str) -> Dict[str, Any]:
        return self.get_resource_by_id("Observation", observation_id)
