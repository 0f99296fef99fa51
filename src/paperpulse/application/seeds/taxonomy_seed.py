from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from paperpulse.infrastructure.stores.analysis_store import CardAnalysisStore

logger = logging.getLogger(__name__)

SEED_FILE = Path(__file__).parent / "taxonomy.yaml"


def load_seed_entries(path: Optional[Path] = None) -> List[Dict[str, Any]]:
    with open(path or SEED_FILE, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    return list(data.get("entries") or [])


def seed_taxonomy(store: CardAnalysisStore, path: Optional[Path] = None) -> int:
    """Insert the seed use cases as active entries; returns how many were new."""
    inserted = 0
    for entry in load_seed_entries(path):
        entry_id = store.add_taxonomy_entry(
            name=entry["name"],
            definition=entry.get("definition", ""),
            status="active",
            inclusions=entry.get("inclusions") or [],
            exclusions=entry.get("exclusions") or [],
            examples=entry.get("examples") or [],
            synonyms=entry.get("synonyms") or [],
        )
        if entry_id is not None:
            inserted += 1
    logger.info("Taxonomy seed: %d new entries", inserted)
    return inserted
