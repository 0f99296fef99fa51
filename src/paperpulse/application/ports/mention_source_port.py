"""MentionSourcePort: social and news search used by the mention workflows."""

from __future__ import annotations

from typing import Any, Dict, List, Protocol, runtime_checkable


@runtime_checkable
class MentionSourcePort(Protocol):
    async def search_for_paper(self, title: str, arxiv_id: str) -> List[Dict[str, Any]]: ...

    async def close(self) -> None: ...
