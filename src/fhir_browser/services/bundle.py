from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional


@dataclass(frozen=True)
class BundleEntry:
    full_url: Optional[str] = None
    resource: Optional[Dict[str, Any]] = None
    search_mode: Optional[str] = None
    search_score: Optional[float] = None


@dataclass(frozen=True)
class Bundle:
    """Paged collection returned by a search (a FHIR searchset Bundle)."""

    type: str = "searchset"
    total: Optional[int] = None
    entries: List[BundleEntry] = field(default_factory=list)
    links: Dict[str, str] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, payload: Any) -> "Bundle":
        if not isinstance(payload, Mapping):
            return cls(raw={})
        entries: List[BundleEntry] = []
        for item in payload.get("entry") or []:
            if not isinstance(item, Mapping):
                continue
            resource = item.get("resource")
            search = item.get("search") if isinstance(item.get("search"), Mapping) else {}
            entries.append(BundleEntry(
                full_url=item.get("fullUrl"),
                resource=dict(resource) if isinstance(resource, Mapping) else None,
                search_mode=search.get("mode"),
                search_score=search.get("score"),
            ))
        links: Dict[str, str] = {}
        for link in payload.get("link") or []:
            if isinstance(link, Mapping) and link.get("relation") and link.get("url"):
                # first link wins when a server repeats a relation
                links.setdefault(str(link["relation"]), str(link["url"]))
        total = payload.get("total")
        return cls(
            type=str(payload.get("type") or "searchset"),
            total=int(total) if isinstance(total, (int, float)) and not isinstance(total, bool) else None,
            entries=entries,
            links=links,
            raw=dict(payload),
        )

    def resources(self) -> List[Dict[str, Any]]:
        return [e.resource for e in self.entries if e.resource is not None]

    def link(self, relation: str) -> Optional[str]:
        return self.links.get(relation)

    @property
    def next_url(self) -> Optional[str]:
        return self.link("next")

    @property
    def previous_url(self) -> Optional[str]:
        return self.link("previous") or self.link("prev")
