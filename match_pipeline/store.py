from __future__ import annotations

"""
Match store client: persists CanvasMatches records to the match web service.

    PUT {base_url}/owner/{owner}/matchCollection/{collection}/matches
    body: [ {pGroupId, pId, qGroupId, qId, matches: {p, q, w}}, ... ]
"""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence
from urllib.parse import quote

import requests

from common.errors import PersistenceFailure
from common.types import CanvasMatches


log = logging.getLogger(__name__)


@dataclass(frozen=True)
class MatchStoreTarget:
    base_url: str
    owner: str
    collection: str
    timeout_s: float = 300.0

    @property
    def matches_url(self) -> str:
        return (
            f"{self.base_url.rstrip('/')}/owner/{quote(self.owner, safe='')}"
            f"/matchCollection/{quote(self.collection, safe='')}/matches"
        )


class MatchStore(Protocol):
    def save(self, matches: Sequence[CanvasMatches]) -> int:
        """Store records; return how many were stored."""
        ...


class MatchStoreClient:
    def __init__(self, target: MatchStoreTarget, session: Optional[requests.Session] = None):
        self.target = target
        self.session = session or requests.Session()

    def save(self, matches: Sequence[CanvasMatches]) -> int:
        if not matches:
            return 0
        url = self.target.matches_url
        body = [m.to_dict() for m in matches]
        try:
            r = self.session.put(url, json=body, timeout=self.target.timeout_s)
        except requests.RequestException as e:
            raise PersistenceFailure(f"PUT {url} failed: {e}") from e
        if not (200 <= r.status_code < 300):
            raise PersistenceFailure(f"PUT {url}: {r.text[:200]}", status_code=r.status_code)
        log.info("saved matches", extra={"extra": {"url": url, "pairs": len(body)}})
        return len(body)
