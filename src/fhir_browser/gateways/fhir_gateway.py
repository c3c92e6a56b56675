from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Union

SearchParams = Mapping[str, Union[str, Sequence[str], None]]


class FhirGateway(Protocol):
    """Abstract interface for FHIR server reads and writes."""

    def get_server_config(self):
        ...

    def owns_url(self, url: str) -> bool:
        """True when `url` addresses the configured server."""
        ...

    def get_resource_by_id(self, resource_type: str, resource_id: str) -> Dict[str, Any]:
        ...

    def get_resource_by_url(self, url: str) -> Dict[str, Any]:
        """Follow an absolute or server-relative resource URL."""
        ...

    def search_resources(self, resource_type: str, params: Optional[SearchParams] = None):
        """Return a Bundle wrapper for the search set."""
        ...

    def next_page(self, bundle):
        ...

    def create_resource(self, resource: Mapping[str, Any]) -> Dict[str, Any]:
        ...

    def update_resource(self, resource: Mapping[str, Any]) -> Dict[str, Any]:
        ...

    def delete_resource(self, resource_type: str, resource_id: str) -> None:
        ...

    def get_capability_statement(self) -> Dict[str, Any]:
        ...

    def execute_batch(self, bundle: Mapping[str, Any]) -> Dict[str, Any]:
        ...

    def test_connection(self) -> bool:
        ...


@dataclass(frozen=True)
class Issue:
    """One OperationOutcome.issue entry."""

    severity: str = "error"
    code: str = "unknown"
    diagnostics: Optional[str] = None
    details: Optional[str] = None
    expression: List[str] = field(default_factory=list)

    @classmethod
    def from_json(cls, raw: Any) -> "Issue":
        if not isinstance(raw, Mapping):
            return cls(diagnostics=str(raw))
        details = raw.get("details")
        details_text: Optional[str] = None
        if isinstance(details, Mapping):
            text = details.get("text")
            details_text = text if isinstance(text, str) and text else None
            codings = details.get("coding")
            if details_text is None and isinstance(codings, list) and codings:
                first = codings[0]
                if isinstance(first, Mapping):
                    label = first.get("display") or first.get("code")
                    details_text = str(label) if label else None
        expression = raw.get("expression") or []
        if not isinstance(expression, list):
            expression = [str(expression)]
        diagnostics = raw.get("diagnostics")
        return cls(
            severity=str(raw.get("severity") or "error"),
            code=str(raw.get("code") or "unknown"),
            diagnostics=None if diagnostics is None else str(diagnostics),
            details=details_text,
            expression=[str(e) for e in expression],
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"severity": self.severity, "code": self.code}
        if self.diagnostics is not None:
            out["diagnostics"] = self.diagnostics
        if self.details is not None:
            out["details"] = self.details
        if self.expression:
            out["expression"] = list(self.expression)
        return out


class FhirError(RuntimeError):
    """Normalized error for every failure that crosses the client boundary."""

    def __init__(self, status: int, message: str, issue: Optional[List[Issue]] = None):
        super().__init__(message)
        self.status = int(status)
        self.message = message
        self.issue: List[Issue] = list(issue or [])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "status": self.status,
            "issue": [i.to_dict() for i in self.issue],
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(status={self.status!r}, message={self.message!r})"


class FhirTransportError(FhirError):
    """No response was received (DNS, connection, TLS, timeout)."""


class FhirProtocolError(FhirError):
    """The server answered with a non-2xx status."""


class FhirPreconditionError(FhirError):
    """The caller asked for something the client refuses before sending."""

    def __init__(self, message: str):
        super().__init__(400, message)


def parse_issues(body: Any) -> List[Issue]:
    if not isinstance(body, Mapping):
        return []
    raw_issues = body.get("issue")
    if not isinstance(raw_issues, list):
        return []
    return [Issue.from_json(item) for item in raw_issues]
